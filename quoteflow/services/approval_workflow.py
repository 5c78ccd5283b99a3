"""
Approval gate applied when a proposal is selected for award.

The applicable ApprovalLevel is the tenant's active level with the highest
threshold not above the award amount. No level means the award is final at
once; otherwise one pending Approval is created per active approver and the
first decision resolves the workflow. A level whose approvers are all
invalid auto-approves and leaves a critical audit record, so no quote is
left waiting on nobody.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from quoteflow.extensions import db
from quoteflow.exceptions import InvalidStateError, NotFoundError, ValidationError
from quoteflow.integrations.email_client import EmailClient
from quoteflow.integrations.evolution_client import EvolutionClient
from quoteflow.models import (Approval, ApprovalLevel, ApprovalStatus, Client, Negotiation,
                              NegotiationStatus, Quote, QuoteResponse, QuoteStatus,
                              ResponseStatus, SystemSetting, User)
from quoteflow.services.dispatch import OutboundMessage, fan_out
from quoteflow.services.templates import format_currency, render_template
from quoteflow.utils.audit import record_audit
from quoteflow.utils.notification_service import notification_service

logger = logging.getLogger(__name__)

NOTIFY_REJECTED_SETTING = 'notify_rejected_suppliers'
AWARDABLE_QUOTE_STATUSES = (
    QuoteStatus.SENT.value,
    QuoteStatus.AWAITING_AI_APPROVAL.value,
)

def get_setting(client_id: Optional[int], key: str, default=None):
    """Setting value for the tenant, then the global one, then ``default``."""
    scopes = [client_id, None] if client_id else [None]
    for scope in scopes:
        setting = SystemSetting.query.filter_by(client_id=scope, setting_key=key).first()
        if setting is not None and setting.setting_value is not None:
            return setting.setting_value
    return default

def _setting_enabled(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ('false', '0', 'no', 'off', '')
    if isinstance(value, dict):
        return bool(value.get('enabled', True))
    return bool(value)

def find_approval_level(client_id: int, amount: float) -> Optional[ApprovalLevel]:
    return ApprovalLevel.query.filter(
        ApprovalLevel.client_id == client_id,
        ApprovalLevel.active.is_(True),
        ApprovalLevel.amount_threshold <= amount
    ).order_by(ApprovalLevel.amount_threshold.desc()).first()

def valid_approvers(level: ApprovalLevel) -> List[User]:
    """Active users among the level's approver ids; logs every skipped id."""
    users = []
    for approver_id in level.approvers or []:
        try:
            user = db.session.get(User, int(approver_id))
        except (TypeError, ValueError):
            user = None
        if user is None or not user.is_active:
            logger.warning(f"Approval level {level.id}: skipping approver {approver_id!r} (missing or inactive)")
            continue
        if user.id not in {u.id for u in users}:
            users.append(user)
    return users

def _negotiation_for(response: QuoteResponse, statuses) -> Optional[Negotiation]:
    return Negotiation.query.filter(
        Negotiation.selected_response_id == response.id,
        Negotiation.status.in_(statuses)
    ).order_by(Negotiation.created_at.desc()).first()

def award_amount(response: QuoteResponse) -> float:
    """Negotiated amount when a negotiation on this response reached agreement."""
    negotiation = _negotiation_for(response, (
        NegotiationStatus.PENDING_APPROVAL.value,
        NegotiationStatus.AWAITING_APPROVAL.value,
        NegotiationStatus.APPROVED.value,
    ))
    if negotiation and negotiation.negotiated_amount:
        return negotiation.negotiated_amount
    return response.total_amount

def select_proposal_for_award(response_id: int, quote_id: int, comments: Optional[str] = None,
                              actor_id: Optional[int] = None) -> Dict[str, Any]:
    """Select a proposal and either finalise the award or open an approval workflow."""
    quote = db.session.get(Quote, quote_id)
    if not quote:
        raise NotFoundError(f"Quote {quote_id} not found")
    response = db.session.get(QuoteResponse, response_id)
    if not response or response.quote_id != quote.id:
        raise NotFoundError(f"Proposal {response_id} not found for quote {quote_id}")
    if quote.status not in AWARDABLE_QUOTE_STATUSES:
        raise InvalidStateError(f"Quote {quote_id} cannot be awarded from status {quote.status}",
                                status=quote.status)
    if response.status != ResponseStatus.PENDING.value:
        raise InvalidStateError(f"Proposal {response_id} is already {response.status}",
                                status=response.status)

    amount = award_amount(response)
    level = find_approval_level(quote.client_id, amount)

    if level is None:
        result = _finalize_award(quote, response, amount, comments, actor_id)
        result['approval_required'] = False
        return result

    approvers = valid_approvers(level)
    if not approvers:
        record_audit(
            action='AUTO_APPROVED_NO_APPROVERS',
            object_type='quote_response',
            object_id=response.id,
            client_id=quote.client_id,
            details={'quote_id': quote.id, 'approval_level_id': level.id,
                     'configured_approvers': level.approvers or [], 'amount': amount},
            result='warning',
            severity='critical'
        )
        result = _finalize_award(quote, response, amount, comments, actor_id)
        result.update({
            'approval_required': True,
            'auto_approved': True,
            'warning': f"Approval level '{level.name}' has no active approvers; proposal was auto-approved",
        })
        return result

    response.status = ResponseStatus.SELECTED.value
    quote.status = QuoteStatus.PENDING_APPROVAL.value

    negotiation = _negotiation_for(response, (NegotiationStatus.PENDING_APPROVAL.value,))
    if negotiation:
        negotiation.status = NegotiationStatus.AWAITING_APPROVAL.value

    client = db.session.get(Client, quote.client_id)
    supplier_name = response.supplier.name if response.supplier else ''
    approvals = []
    for user in approvers:
        approval = Approval(
            quote_id=quote.id,
            quote_response_id=response.id,
            approval_level_id=level.id,
            approver_id=user.id,
            status=ApprovalStatus.PENDING.value,
            comments=comments
        )
        db.session.add(approval)
        db.session.flush()
        approvals.append(approval)

        rendered = render_template(quote.client_id, 'approval_request', {
            'approver_name': user.name or user.email,
            'supplier_name': supplier_name,
            'amount_formatted': format_currency(amount),
            'quote_title': quote.title,
            'level_name': level.name,
            'client_name': client.name if client else '',
            'comments': comments,
        })
        notification_service.notify_user(
            user.id,
            title=rendered.subject or 'Aprovação pendente',
            message=rendered.content,
            notification_type='approval_request',
            priority='high',
            client_id=quote.client_id,
            related_type='approval',
            related_id=approval.id,
            data={'quote_id': quote.id, 'response_id': response.id, 'amount': amount}
        )

    record_audit(
        action='APPROVAL_REQUESTED',
        object_type='quote_response',
        object_id=response.id,
        client_id=quote.client_id,
        actor_type='user' if actor_id else 'system',
        actor_id=actor_id or 'system',
        user_id=actor_id,
        details={'quote_id': quote.id, 'approval_level_id': level.id,
                 'approvers': [user.id for user in approvers], 'amount': amount}
    )
    db.session.commit()

    logger.info(f"Quote {quote.id} awaiting approval by {len(approvers)} approver(s) ({level.name})")
    return {
        'success': True,
        'approval_required': True,
        'auto_approved': False,
        'approval_level': level.name,
        'approvers_notified': len(approvers),
        'approval_ids': [approval.id for approval in approvals],
        'approved_amount': amount,
    }

def decide_approval(approval_id: int, approver_id: int, decision: str,
                    comments: Optional[str] = None) -> Dict[str, Any]:
    """Record an approver's decision; the first decision resolves the workflow."""
    if decision not in (ApprovalStatus.APPROVED.value, ApprovalStatus.REJECTED.value):
        raise ValidationError(f"Unknown decision: {decision}")

    approval = db.session.get(Approval, approval_id)
    if not approval:
        raise NotFoundError(f"Approval {approval_id} not found")
    if approval.approver_id != approver_id:
        raise ValidationError(f"User {approver_id} is not the approver of approval {approval_id}")
    if approval.status != ApprovalStatus.PENDING.value:
        raise InvalidStateError(f"Approval {approval_id} is already {approval.status}", status=approval.status)

    quote = approval.quote
    response = approval.quote_response
    if quote.status != QuoteStatus.PENDING_APPROVAL.value:
        raise InvalidStateError(f"Quote {quote.id} is not pending approval", status=quote.status)

    now = datetime.utcnow()
    approval.status = decision
    approval.comments = comments or approval.comments
    approval.decided_at = now

    # Other approvers no longer need to act
    Approval.query.filter(
        Approval.quote_response_id == response.id,
        Approval.id != approval.id,
        Approval.status == ApprovalStatus.PENDING.value
    ).update({'status': decision, 'decided_at': now,
              'comments': f'Resolved by approval {approval.id}'}, synchronize_session=False)

    if decision == ApprovalStatus.APPROVED.value:
        result = _finalize_award(quote, response, award_amount(response), comments, approver_id)
        result['approval_id'] = approval.id
        return result

    response.status = ResponseStatus.REJECTED.value
    quote.status = QuoteStatus.REJECTED.value
    negotiation = _negotiation_for(response, (NegotiationStatus.AWAITING_APPROVAL.value,))
    if negotiation:
        negotiation.status = NegotiationStatus.REJECTED.value
        negotiation.human_approved = False
        negotiation.approved_by_id = approver_id
        negotiation.completed_at = now

    record_audit(
        action='PROPOSAL_REJECTED',
        object_type='quote_response',
        object_id=response.id,
        client_id=quote.client_id,
        actor_type='user',
        actor_id=approver_id,
        user_id=approver_id,
        details={'quote_id': quote.id, 'approval_id': approval.id, 'comments': comments}
    )
    db.session.commit()

    logger.info(f"Proposal {response.id} rejected by user {approver_id}")
    return {'success': True, 'approval_id': approval.id, 'decision': decision,
            'quote_status': quote.status}

def _finalize_award(quote: Quote, response: QuoteResponse, amount: float,
                    comments: Optional[str], actor_id: Optional[int]) -> Dict[str, Any]:
    """Approve the proposal and quote, reject competitors, commit, then notify suppliers."""
    response.status = ResponseStatus.APPROVED.value
    quote.status = QuoteStatus.APPROVED.value
    quote.supplier_id = response.supplier_id

    negotiation = _negotiation_for(response, (NegotiationStatus.PENDING_APPROVAL.value,
                                              NegotiationStatus.AWAITING_APPROVAL.value))
    if negotiation:
        negotiation.status = NegotiationStatus.APPROVED.value
        negotiation.human_approved = True
        negotiation.approved_by_id = actor_id
        negotiation.completed_at = datetime.utcnow()

    rejected = QuoteResponse.query.filter(
        QuoteResponse.quote_id == quote.id,
        QuoteResponse.id != response.id,
        QuoteResponse.status.in_((ResponseStatus.PENDING.value, ResponseStatus.SELECTED.value))
    ).all()
    for other in rejected:
        other.status = ResponseStatus.REJECTED.value

    notify_rejected = _setting_enabled(get_setting(quote.client_id, NOTIFY_REJECTED_SETTING, True))

    record_audit(
        action='PROPOSAL_APPROVED',
        object_type='quote_response',
        object_id=response.id,
        client_id=quote.client_id,
        actor_type='user' if actor_id else 'system',
        actor_id=actor_id or 'system',
        user_id=actor_id,
        details={
            'quote_id': quote.id,
            'supplier_id': response.supplier_id,
            'approved_amount': amount,
            'comments': comments,
            'other_proposals_rejected': len(rejected),
        }
    )
    db.session.commit()

    notifications = _notify_suppliers(quote, response, amount, rejected if notify_rejected else [])

    logger.info(f"Proposal {response.id} approved for quote {quote.id} ({format_currency(amount)})")
    return {
        'success': True,
        'auto_approved': False,
        'quote_status': quote.status,
        'approved_amount': amount,
        'supplier_id': response.supplier_id,
        'rejected_responses': [other.id for other in rejected],
        'supplier_notifications': notifications,
    }

def _notify_suppliers(quote: Quote, winner: QuoteResponse, amount: float,
                      rejected: List[QuoteResponse]) -> List[Dict[str, Any]]:
    """Tell the winner (and optionally the other bidders) over chat and email."""
    client = db.session.get(Client, quote.client_id)
    messages = []
    for response, purpose in [(winner, 'proposal_approved')] + [(r, 'proposal_rejected') for r in rejected]:
        supplier = response.supplier
        if not supplier:
            continue
        rendered = render_template(quote.client_id, purpose, {
            'supplier_name': supplier.name,
            'quote_title': quote.title,
            'client_name': client.name if client else '',
            'amount_formatted': format_currency(amount if response is winner else response.total_amount),
        })
        messages.append(OutboundMessage(
            supplier_id=supplier.id,
            supplier_name=supplier.name,
            phone=supplier.contact_phone,
            email=supplier.email,
            content=rendered.content,
            subject=rendered.subject,
            send_chat=bool(supplier.contact_phone),
            send_email=bool(supplier.email),
            variant=purpose,
            template_source=rendered.source,
            warnings=rendered.warnings
        ))

    if not messages:
        return []
    fan_out(messages, EvolutionClient.for_client(quote.client_id), EmailClient.for_client(quote.client_id))
    for message in messages:
        for error in message.errors:
            logger.error(f"Post-award notification failed: {error}")
    return [message.to_dict() for message in messages]
