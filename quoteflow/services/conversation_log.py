"""
Append-only negotiation conversation log.

Entries are rows keyed by (negotiation_id, sequence). Appending takes the
next sequence number and relies on the unique constraint; a concurrent
writer that grabbed the same number makes the insert fail and the append is
retried with a fresh number.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy.exc import IntegrityError
from quoteflow.extensions import db
from quoteflow.exceptions import InvalidStateError
from quoteflow.models import NegotiationMessage

logger = logging.getLogger(__name__)

MAX_APPEND_ATTEMPTS = 5

def _next_sequence(negotiation_id: int) -> int:
    current = db.session.query(db.func.max(NegotiationMessage.sequence)).filter(
        NegotiationMessage.negotiation_id == negotiation_id
    ).scalar()
    return (current or 0) + 1

def append_message(negotiation_id: int, role: str, message: str, channel: str = 'whatsapp',
                   parsed: Optional[Dict[str, Any]] = None,
                   metadata: Optional[Dict[str, Any]] = None) -> NegotiationMessage:
    """Append one entry and commit it."""
    for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
        entry = NegotiationMessage(
            negotiation_id=negotiation_id,
            sequence=_next_sequence(negotiation_id),
            role=role,
            message=message,
            channel=channel,
            parsed=parsed,
            message_metadata=metadata or {},
            timestamp=datetime.utcnow()
        )
        db.session.add(entry)
        try:
            db.session.commit()
            return entry
        except IntegrityError:
            db.session.rollback()
            logger.warning(f"Sequence clash appending to negotiation {negotiation_id} (attempt {attempt})")

    raise InvalidStateError(f"Could not append to negotiation {negotiation_id} conversation log")
