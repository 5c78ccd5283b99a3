"""
Per-supplier response tokens and the links built from them
"""
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Optional
from flask import current_app
from quoteflow.extensions import db
from quoteflow.models import QuoteToken, Supplier

logger = logging.getLogger(__name__)

SHORT_CODE_ALPHABET = string.ascii_letters + string.digits
SHORT_CODE_LENGTH = 8

def _new_short_code() -> str:
    while True:
        code = ''.join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))
        if not QuoteToken.query.filter_by(short_code=code).first():
            return code

def issue_token(quote_id: int, supplier_id: int, now: Optional[datetime] = None) -> QuoteToken:
    """Return the (quote, supplier) token, creating it or rotating it when expired."""
    now = now or datetime.utcnow()
    ttl = timedelta(days=current_app.config.get('QUOTE_TOKEN_TTL_DAYS', 30))

    token = QuoteToken.query.filter_by(quote_id=quote_id, supplier_id=supplier_id).first()
    if token and not token.is_expired(now):
        return token

    # Short code lookup queries; nothing half-built may be pending in the session then
    values = {
        'full_token': secrets.token_urlsafe(32),
        'short_code': _new_short_code(),
        'expires_at': now + ttl,
        'created_at': now,
    }

    if token:
        logger.info(f"Rotating expired token for quote {quote_id}, supplier {supplier_id}")
        for name, value in values.items():
            setattr(token, name, value)
    else:
        token = QuoteToken(quote_id=quote_id, supplier_id=supplier_id, **values)
        db.session.add(token)

    db.session.flush()
    return token

def find_token(value: str, now: Optional[datetime] = None) -> Optional[QuoteToken]:
    """Look a token up by full token or short code; expired tokens are not returned."""
    token = QuoteToken.query.filter(
        db.or_(QuoteToken.full_token == value, QuoteToken.short_code == value)
    ).first()
    if token and token.is_expired(now):
        return None
    return token

def _base_url() -> str:
    return current_app.config.get('FRONTEND_BASE_URL', '').rstrip('/')

def proposal_link(token: QuoteToken) -> str:
    if current_app.config.get('SHORT_LINKS_ENABLED', True):
        return f"{_base_url()}/s/{token.short_code}"
    return f"{_base_url()}/supplier/quick-response/{token.full_token}"

def registration_link(token: QuoteToken) -> str:
    if current_app.config.get('SHORT_LINKS_ENABLED', True):
        return f"{_base_url()}/s/{token.short_code}"
    return f"{_base_url()}/supplier/register/{token.full_token}"

def supplier_link(supplier: Supplier, token: QuoteToken) -> str:
    """Proposal link for registered suppliers, registration link otherwise."""
    return proposal_link(token) if supplier.is_registered else registration_link(token)
