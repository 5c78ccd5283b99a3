"""
Inbound WhatsApp messages routed to active negotiations.

Every event answers with a neutral result (``ignored`` or ``processed``) so
the gateway never retries. A matched message is first appended to the
conversation log in its own commit; classification and the status
transition follow as a separate step.
"""
import logging
from typing import Any, Dict, Optional, Tuple
from flask import current_app
from quoteflow.agents.intent_classifier import (Classification, IntentClassifier, INTENT_ACCEPTED,
                                                INTENT_COUNTER_OFFER, INTENT_QUESTION, INTENT_REJECTED)
from quoteflow.extensions import db
from quoteflow.integrations.evolution_client import normalize_phone
from quoteflow.models import Negotiation, NegotiationStatus
from quoteflow.services.conversation_log import append_message
from quoteflow.services.templates import format_currency
from quoteflow.utils.audit import record_audit
from quoteflow.utils.notification_service import notification_service

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = ('', 'messages.upsert')

def _ignored(reason: str) -> Dict[str, Any]:
    logger.debug(f"Inbound event ignored: {reason}")
    return {'status': 'ignored', 'reason': reason}

def parse_event(payload: Dict[str, Any], default_country: str = '55') -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Extract sender and text from a gateway event; returns (message, ignore_reason)."""
    if not isinstance(payload, dict):
        return None, 'invalid_payload'

    event = str(payload.get('event') or '').strip().lower().replace('_', '.')
    if event not in SUPPORTED_EVENTS:
        return None, 'unsupported_event'

    data = payload.get('data') or {}
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        return None, 'invalid_message'

    key = data.get('key') or {}
    if key.get('fromMe'):
        return None, 'own_message'

    remote_jid = str(key.get('remoteJid') or '')
    if remote_jid.endswith('@g.us'):
        return None, 'group_message'

    content = data.get('message') or {}
    text = content.get('conversation') or (content.get('extendedTextMessage') or {}).get('text') or ''
    phone = normalize_phone(remote_jid.split('@')[0], default_country)
    text = text.strip()
    if not phone or not text:
        return None, 'invalid_message'

    return {
        'phone': phone,
        'text': text,
        'message_id': key.get('id'),
        'sender_name': data.get('pushName'),
    }, None

def find_negotiation_for_phone(phone: str, default_country: str = '55') -> Optional[Negotiation]:
    """Newest negotiating thread whose supplier's whatsapp or phone matches."""
    negotiations = Negotiation.query.filter_by(
        status=NegotiationStatus.NEGOTIATING.value
    ).order_by(Negotiation.created_at.desc(), Negotiation.id.desc()).all()

    for negotiation in negotiations:
        supplier = negotiation.supplier
        if not supplier:
            continue
        candidates = {normalize_phone(supplier.whatsapp, default_country),
                      normalize_phone(supplier.phone, default_country)}
        if phone in candidates:
            return negotiation
    return None

def _discount(original: float, amount: float) -> float:
    return max(0.0, round(((original - amount) / original) * 100, 2))

def decide_transition(negotiation: Negotiation, classification: Optional[Classification],
                      confidence_threshold: float = 70) -> Optional[Tuple[str, Optional[float], Optional[float]]]:
    """New (status, negotiated_amount, discount) for a classified reply, or None to leave it."""
    if classification is None:
        return None

    original = negotiation.original_amount
    intent = classification.intent
    if intent == INTENT_ACCEPTED and classification.confidence > confidence_threshold:
        amount = classification.extracted_amount or negotiation.negotiated_amount or original
        return NegotiationStatus.PENDING_APPROVAL.value, amount, _discount(original, amount)
    if intent == INTENT_COUNTER_OFFER and classification.extracted_amount is not None:
        amount = classification.extracted_amount
        return NegotiationStatus.PENDING_APPROVAL.value, amount, _discount(original, amount)
    if intent == INTENT_REJECTED and classification.confidence > confidence_threshold:
        return NegotiationStatus.FAILED.value, negotiation.negotiated_amount, negotiation.discount_percentage
    if intent == INTENT_QUESTION:
        return NegotiationStatus.NEGOTIATING.value, negotiation.negotiated_amount, negotiation.discount_percentage
    return None

def _notify_status_change(negotiation: Negotiation, new_status: str, classification: Optional[Classification]):
    quote = negotiation.quote
    supplier_name = negotiation.supplier.name
    if new_status == NegotiationStatus.PENDING_APPROVAL.value:
        title = '🤝 Fornecedor respondeu a negociação'
        message = (f"{supplier_name} respondeu a negociação da cotação '{quote.title}'. "
                   f"Valor: {format_currency(negotiation.negotiated_amount)}")
    elif new_status == NegotiationStatus.FAILED.value:
        title = '❌ Negociação recusada'
        message = f"{supplier_name} recusou a negociação da cotação '{quote.title}'"
    else:
        title = '💬 Nova mensagem na negociação'
        message = f"Nova mensagem de {supplier_name} na cotação '{quote.title}'"

    notification_service.notify_client_users(
        quote.client_id,
        title=title,
        message=message,
        notification_type='ai_negotiation',
        priority='high',
        related_type='negotiation',
        related_id=negotiation.id,
        data={'quote_id': quote.id, 'new_status': new_status,
              'parsed_intent': classification.intent if classification else None}
    )

def ingest_inbound_message(payload: Dict[str, Any], classifier: Optional[IntentClassifier] = None) -> Dict[str, Any]:
    """Route one gateway event to its negotiation and apply the reply's effect."""
    default_country = current_app.config.get('DEFAULT_COUNTRY_CODE', '55')
    inbound, reason = parse_event(payload, default_country)
    if reason:
        return _ignored(reason)

    negotiation = find_negotiation_for_phone(inbound['phone'], default_country)
    if not negotiation:
        return _ignored('no_negotiation_for_supplier')

    negotiation_id = negotiation.id
    supplier = negotiation.supplier

    # The raw message is committed before anything can fail
    entry = append_message(
        negotiation_id, 'supplier', inbound['text'], channel='whatsapp',
        metadata={'message_id': inbound['message_id'], 'phone': inbound['phone'],
                  'supplier_name': supplier.name, 'sender_name': inbound['sender_name']}
    )

    negotiation = db.session.get(Negotiation, negotiation_id)
    quote = negotiation.quote
    classifier = classifier or IntentClassifier()
    classification = classifier.classify(inbound['text'], negotiation.original_amount,
                                         proposed_amount=negotiation.negotiated_amount,
                                         client_id=quote.client_id)
    if classification:
        entry.parsed = classification.to_dict()

    previous_status = negotiation.status
    threshold = current_app.config.get('NEGOTIATION_CONFIDENCE_THRESHOLD', 70)
    transition = decide_transition(negotiation, classification, threshold)
    if transition:
        negotiation.status, negotiation.negotiated_amount, negotiation.discount_percentage = transition
    else:
        logger.info(f"Reply on negotiation {negotiation_id} not clear; status stays {previous_status}")

    if negotiation.status != previous_status:
        _notify_status_change(negotiation, negotiation.status, classification)

    record_audit(
        action='AI_NEGOTIATION_MESSAGE_RECEIVED',
        object_type='negotiation',
        object_id=negotiation_id,
        client_id=quote.client_id,
        actor_type='webhook',
        actor_id='evolution',
        details={
            'supplier_id': supplier.id,
            'supplier_name': supplier.name,
            'phone': inbound['phone'],
            'message': inbound['text'],
            'parsed': classification.to_dict() if classification else None,
            'previous_status': previous_status,
            'new_status': negotiation.status,
        }
    )
    db.session.commit()

    logger.info(f"Inbound message for negotiation {negotiation_id}: {previous_status} -> {negotiation.status}")
    return {
        'status': 'processed',
        'negotiation_id': negotiation_id,
        'previous_status': previous_status,
        'new_status': negotiation.status,
        'parsed': classification.to_dict() if classification else None,
    }
