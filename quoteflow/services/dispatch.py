"""
Quote dispatch and reminder fan-out.

Both operations follow the same shape: database reads, token issuance and
template rendering happen in the calling thread; only the network sends run
on a bounded thread pool; all state writes happen once, after every send has
finished, in a single commit.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional
from flask import current_app
from quoteflow.extensions import db
from quoteflow.exceptions import InvalidStateError, NotFoundError, ValidationError
from quoteflow.integrations.email_client import EmailClient
from quoteflow.integrations.evolution_client import EvolutionClient
from quoteflow.models import (Client, Quote, QuoteStatus, QuoteSupplierStatus, Supplier)
from quoteflow.services import status_tracker
from quoteflow.services.links import issue_token, supplier_link
from quoteflow.services.templates import (format_currency, format_deadline, format_items,
                                          render_template)
from quoteflow.utils.audit import record_audit

logger = logging.getLogger(__name__)

CLOSED_QUOTE_STATUSES = (QuoteStatus.APPROVED.value, QuoteStatus.REJECTED.value)
SENDABLE_QUOTE_STATUSES = (QuoteStatus.DRAFT.value, QuoteStatus.SENT.value)
REMINDER_ORDINALS = {0: 'primeiro', 1: 'segundo'}


@dataclass
class OutboundMessage:
    """One supplier's prepared message and, after sending, its outcome."""
    supplier_id: int
    supplier_name: str
    phone: Optional[str]
    email: Optional[str]
    content: str
    subject: Optional[str]
    send_chat: bool
    send_email: bool
    variant: str = ''
    link: str = ''
    template_source: str = ''
    warnings: List[str] = field(default_factory=list)
    chat: Optional[Dict[str, Any]] = None
    email_result: Optional[Dict[str, Any]] = None
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool((self.chat and self.chat.get('success')) or
                    (self.email_result and self.email_result.get('success')))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'supplier_id': self.supplier_id,
            'supplier_name': self.supplier_name,
            'variant': self.variant,
            'link': self.link,
            'template_source': self.template_source,
            'warnings': self.warnings,
            'success': self.success,
            'whatsapp': self.chat,
            'email': self.email_result,
            'errors': self.errors,
        }


def _deliver(message: OutboundMessage, chat_client: Optional[EvolutionClient],
             email_client: Optional[EmailClient]) -> OutboundMessage:
    """Send one supplier's message on every requested channel. Runs on a worker thread."""
    if message.send_chat:
        if not message.phone:
            message.chat = {'success': False, 'skipped': True, 'error': 'Supplier has no phone number'}
        else:
            try:
                message.chat = chat_client.send_text(message.phone, message.content).to_dict()
            except Exception as e:
                logger.error(f"Unexpected error sending WhatsApp to supplier {message.supplier_id}: {e}")
                message.chat = {'success': False, 'error': str(e)}
            if not message.chat['success']:
                message.errors.append(f"{message.supplier_name}: whatsapp: {message.chat.get('error')}")

    if message.send_email:
        if not message.email:
            message.email_result = {'success': False, 'skipped': True, 'error': 'Supplier has no email'}
        else:
            try:
                message.email_result = email_client.send(
                    message.email, message.subject or message.supplier_name, message.content
                ).to_dict()
            except Exception as e:
                logger.error(f"Unexpected error emailing supplier {message.supplier_id}: {e}")
                message.email_result = {'success': False, 'error': str(e)}
            if not message.email_result['success']:
                message.errors.append(f"{message.supplier_name}: email: {message.email_result.get('error')}")

    return message


def fan_out(messages: List[OutboundMessage], chat_client: Optional[EvolutionClient],
             email_client: Optional[EmailClient]) -> List[OutboundMessage]:
    """Deliver every message on a bounded pool; one failure never stops the others."""
    if not messages:
        return messages
    max_workers = max(1, min(current_app.config.get('DISPATCH_MAX_WORKERS', 4), len(messages)))
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='dispatch') as pool:
        futures = [pool.submit(_deliver, message, chat_client, email_client) for message in messages]
        for future in as_completed(futures):
            future.result()
    return messages


def _select_suppliers(quote: Quote, supplier_ids: Optional[Iterable[int]]) -> List[Supplier]:
    query = Supplier.query.filter(
        Supplier.is_active.is_(True),
        db.or_(Supplier.client_id == quote.client_id, Supplier.client_id.is_(None))
    )
    if supplier_ids:
        query = query.filter(Supplier.id.in_(list(supplier_ids)))
    return query.order_by(Supplier.id).all()


def quote_variables(quote: Quote, client: Optional[Client], supplier: Supplier,
                    link: str, custom_message: Optional[str] = None) -> Dict[str, Any]:
    """Template variables shared by quote-related messages."""
    return {
        'client_name': client.name if client else '',
        'client_email': (client.email if client else None) or 'Não informado',
        'client_phone': (client.phone if client else None) or '',
        'quote_title': quote.title,
        'quote_id': quote.id,
        'deadline_formatted': format_deadline(quote.deadline),
        'total_formatted': format_currency(quote.total),
        'items_list': format_items(quote.items),
        'items_count': str(len(quote.items)),
        'supplier_name': supplier.name,
        'proposal_link': link,
        'registration_link': link,
        'custom_message': (custom_message or '').strip() or None,
    }


def dispatch_quote(quote_id: int, supplier_ids: Optional[List[int]] = None,
                   send_chat: bool = True, send_email: bool = False,
                   custom_message: Optional[str] = None,
                   actor_id: Optional[int] = None) -> Dict[str, Any]:
    """Send a quote to suppliers and report per-supplier, per-channel outcomes."""
    quote = db.session.get(Quote, quote_id)
    if not quote:
        raise NotFoundError(f"Quote {quote_id} not found")
    if quote.status in CLOSED_QUOTE_STATUSES:
        raise InvalidStateError(f"Quote {quote_id} is already {quote.status}", status=quote.status)
    if not send_chat and not send_email:
        raise ValidationError("At least one channel (whatsapp or email) must be requested")

    suppliers = _select_suppliers(quote, supplier_ids)
    if not suppliers:
        raise NotFoundError("No active suppliers found for this quote")

    errors = []
    if supplier_ids:
        missing = sorted(set(supplier_ids) - {supplier.id for supplier in suppliers})
        errors.extend(f"Supplier {supplier_id} not found or inactive" for supplier_id in missing)

    client = db.session.get(Client, quote.client_id)
    chat_client = EvolutionClient.for_client(quote.client_id) if send_chat else None
    email_client = EmailClient.for_client(quote.client_id) if send_email else None

    # Preparation: tokens, links and rendering stay on the request thread
    messages = []
    for supplier in suppliers:
        token = issue_token(quote.id, supplier.id)
        link = supplier_link(supplier, token)
        variant = 'quote_request' if supplier.is_registered else 'supplier_invite'
        rendered = render_template(quote.client_id, variant,
                                   quote_variables(quote, client, supplier, link, custom_message))
        messages.append(OutboundMessage(
            supplier_id=supplier.id,
            supplier_name=supplier.name,
            phone=supplier.contact_phone,
            email=supplier.email,
            content=rendered.content,
            subject=rendered.subject,
            send_chat=send_chat,
            send_email=send_email,
            variant=variant,
            link=link,
            template_source=rendered.source,
            warnings=rendered.warnings
        ))

    fan_out(messages, chat_client, email_client)

    # Finalisation: exactly once, after every send
    now = datetime.utcnow()
    for message in messages:
        status_tracker.upsert_status(quote.id, message.supplier_id)
        errors.extend(message.errors)

    sent_count = sum(1 for message in messages if message.success)
    if quote.status in SENDABLE_QUOTE_STATUSES:
        quote.status = QuoteStatus.SENT.value
    else:
        logger.info(f"Quote {quote.id} stays {quote.status} after re-dispatch")
    quote.sent_at = quote.sent_at or now
    quote.suppliers_sent_count = sent_count

    record_audit(
        action='QUOTE_SENT_TO_SUPPLIERS',
        object_type='quote',
        object_id=quote.id,
        client_id=quote.client_id,
        actor_type='user' if actor_id else 'system',
        actor_id=actor_id or 'system',
        user_id=actor_id,
        details={
            'suppliers_count': len(messages),
            'sent_count': sent_count,
            'send_whatsapp': send_chat,
            'send_email': send_email,
            'supplier_names': [message.supplier_name for message in messages],
            'whatsapp_scope': chat_client.config.scope if chat_client else None,
        },
        result='success' if sent_count == len(messages) else ('partial' if sent_count else 'failure')
    )
    db.session.commit()

    logger.info(f"Quote {quote.id} dispatched: {sent_count}/{len(messages)} suppliers reached")
    return {
        'success': True,
        'quote_id': quote.id,
        'quote_status': quote.status,
        'sent_count': sent_count,
        'suppliers_total': len(messages),
        'outcomes': [message.to_dict() for message in messages],
        'errors': errors,
    }


def send_reminders(hours_since_sent: Optional[int] = None, quote_id: Optional[int] = None,
                   now: Optional[datetime] = None) -> Dict[str, Any]:
    """Remind suppliers who have not answered quotes sent more than ``hours_since_sent`` ago."""
    now = now or datetime.utcnow()
    hours = hours_since_sent or current_app.config.get('REMINDER_DEFAULT_HOURS', 48)
    min_interval = current_app.config.get('REMINDER_MIN_INTERVAL_HOURS', 24)
    cutoff = now - timedelta(hours=hours)

    query = Quote.query.filter(
        Quote.status == QuoteStatus.SENT.value,
        db.func.coalesce(Quote.sent_at, Quote.created_at) <= cutoff
    )
    if quote_id:
        query = query.filter(Quote.id == quote_id)

    reminders_sent = 0
    results = []
    for quote in query.order_by(Quote.id).all():
        rows = QuoteSupplierStatus.query.filter(
            QuoteSupplierStatus.quote_id == quote.id,
            QuoteSupplierStatus.status.in_(status_tracker.REMINDABLE_STATUSES)
        ).order_by(QuoteSupplierStatus.id).all()
        due = [row for row in rows if status_tracker.is_reminder_due(row, now, min_interval)]
        if not due:
            continue

        client = db.session.get(Client, quote.client_id)
        chat_client = EvolutionClient.for_client(quote.client_id)
        email_client = EmailClient.for_client(quote.client_id)

        messages = []
        pending_rows = {}
        for row in due:
            supplier = row.supplier
            if not supplier or not (supplier.contact_phone or supplier.email):
                results.append({'quote_id': quote.id, 'supplier_id': row.supplier_id,
                                'success': False, 'error': 'Supplier has no phone or email'})
                continue
            token = issue_token(quote.id, supplier.id, now=now)
            link = supplier_link(supplier, token)
            variables = quote_variables(quote, client, supplier, link)
            variables['reminder_ordinal'] = REMINDER_ORDINALS[status_tracker.reminder_count(row.status)]
            rendered = render_template(quote.client_id, 'quote_reminder', variables)
            # Chat first; email only when there is no phone to message
            use_chat = bool(supplier.contact_phone)
            messages.append(OutboundMessage(
                supplier_id=supplier.id,
                supplier_name=supplier.name,
                phone=supplier.contact_phone,
                email=supplier.email,
                content=rendered.content,
                subject=rendered.subject,
                send_chat=use_chat,
                send_email=not use_chat,
                variant='quote_reminder',
                link=link,
                template_source=rendered.source,
                warnings=rendered.warnings
            ))
            pending_rows[supplier.id] = row

        fan_out(messages, chat_client, email_client)

        quote_sent = 0
        for message in messages:
            row = pending_rows[message.supplier_id]
            result = {
                'quote_id': quote.id,
                'supplier_id': message.supplier_id,
                'supplier_name': message.supplier_name,
                'channel': 'whatsapp' if message.send_chat else 'email',
                'success': message.success,
            }
            if message.success:
                status_tracker.advance_reminder(row, now)
                result['reminder_count'] = status_tracker.reminder_count(row.status)
                quote_sent += 1
            else:
                result['error'] = '; '.join(message.errors)
            results.append(result)

        if quote_sent:
            record_audit(
                action='QUOTE_REMINDERS_SENT',
                object_type='quote',
                object_id=quote.id,
                client_id=quote.client_id,
                details={'reminders_sent': quote_sent, 'hours_since_sent': hours}
            )
        reminders_sent += quote_sent

    db.session.commit()
    logger.info(f"Reminder run finished: {reminders_sent} reminders sent")
    return {'success': True, 'reminders_sent': reminders_sent, 'results': results}
