"""
Supplier answers received through the response link
"""
import logging
from datetime import datetime
from typing import Optional
from quoteflow.extensions import db
from quoteflow.exceptions import InvalidStateError, NotFoundError, ValidationError
from quoteflow.models import QuoteResponse, QuoteStatus, ResponseStatus
from quoteflow.services import status_tracker
from quoteflow.services.links import find_token
from quoteflow.services.templates import format_currency
from quoteflow.utils.audit import record_audit
from quoteflow.utils.notification_service import notification_service

logger = logging.getLogger(__name__)

OPEN_QUOTE_STATUSES = (QuoteStatus.SENT.value,)

def _open_token(token_value: str):
    token = find_token(token_value)
    if not token:
        raise NotFoundError("Response link not found or expired")
    if token.quote.status not in OPEN_QUOTE_STATUSES:
        raise InvalidStateError(
            f"Quote {token.quote_id} is not accepting answers (status: {token.quote.status})",
            status=token.quote.status
        )
    return token

def submit_proposal(token_value: str, total_amount, delivery_time: Optional[int] = None,
                    payment_terms: Optional[str] = None, notes: Optional[str] = None) -> QuoteResponse:
    """Create or update the supplier's pending proposal and mark them as responded."""
    try:
        amount = float(total_amount)
    except (TypeError, ValueError):
        raise ValidationError("total_amount must be a number")
    if amount <= 0:
        raise ValidationError("total_amount must be positive")

    token = _open_token(token_value)
    quote = token.quote

    response = QuoteResponse.query.filter_by(
        quote_id=quote.id, supplier_id=token.supplier_id, status=ResponseStatus.PENDING.value
    ).first()
    if response is None:
        response = QuoteResponse(quote_id=quote.id, supplier_id=token.supplier_id)
        db.session.add(response)

    response.total_amount = amount
    response.delivery_time = delivery_time
    response.payment_terms = payment_terms
    response.notes = notes
    db.session.flush()

    status_tracker.mark_responded(quote.id, token.supplier_id)

    record_audit(
        action='PROPOSAL_SUBMITTED',
        object_type='quote_response',
        object_id=response.id,
        client_id=quote.client_id,
        actor_type='supplier',
        actor_id=token.supplier_id,
        details={'quote_id': quote.id, 'total_amount': amount, 'delivery_time': delivery_time}
    )
    notification_service.notify_client_users(
        quote.client_id,
        title='Nova proposta recebida',
        message=f"{token.supplier.name} enviou {format_currency(amount)} para '{quote.title}'",
        notification_type='proposal_received',
        related_type='quote',
        related_id=quote.id
    )
    db.session.commit()

    logger.info(f"Proposal {response.id} received for quote {quote.id} from supplier {token.supplier_id}")
    return response

def decline_quote(token_value: str, reason: Optional[str] = None):
    """Record that the supplier will not answer this quote."""
    token = _open_token(token_value)
    row = status_tracker.mark_declined(token.quote_id, token.supplier_id, now=datetime.utcnow())

    record_audit(
        action='QUOTE_DECLINED',
        object_type='quote',
        object_id=token.quote_id,
        client_id=token.quote.client_id,
        actor_type='supplier',
        actor_id=token.supplier_id,
        details={'reason': reason}
    )
    db.session.commit()

    logger.info(f"Supplier {token.supplier_id} declined quote {token.quote_id}")
    return row
