"""
Email delivery through the Resend HTTP API
"""
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import requests
from flask import current_app
from quoteflow.models import Integration, IntegrationType

logger = logging.getLogger(__name__)

@dataclass
class EmailConfig:
    api_key: str = ''
    from_email: str = ''
    from_name: str = ''
    scope: str = 'none'

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.from_email)

    @property
    def sender(self) -> str:
        return f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email

@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    scope: str = 'none'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

def _integration_config(client_id: Optional[int]) -> Dict[str, Any]:
    integration = Integration.query.filter_by(
        integration_type=IntegrationType.EMAIL_RESEND.value,
        client_id=client_id,
        active=True
    ).order_by(Integration.updated_at.desc()).first()
    return integration.configuration if integration and integration.configuration else {}

def resolve_email_config(client_id: Optional[int] = None) -> EmailConfig:
    """Key and sender resolved tenant, then global, then environment."""
    app_config = current_app.config
    sources = []
    if client_id:
        sources.append(('client', _integration_config(client_id)))
    sources.append(('global', _integration_config(None)))
    sources.append(('env', {
        'api_key': app_config.get('RESEND_API_KEY'),
        'from_email': app_config.get('EMAIL_FROM'),
        'from_name': app_config.get('EMAIL_FROM_NAME'),
    }))

    config = EmailConfig()
    for scope, values in sources:
        if not config.api_key and values.get('api_key'):
            config.api_key = values['api_key']
            config.scope = scope
        config.from_email = config.from_email or values.get('from_email') or ''
        config.from_name = config.from_name or values.get('from_name') or ''
    return config

def text_to_html(text: str) -> str:
    """Plain message body to minimal HTML."""
    escaped = (text or '').replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;')
    linked = re.sub(r'(https?://[^\s<]+)', r'<a href="\1">\1</a>', escaped)
    return '<div>' + linked.replace('\n', '<br>') + '</div>'

class EmailClient:
    """Single synchronous send per message; safe to call from worker threads."""

    def __init__(self, config: EmailConfig, api_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.config = config
        self.api_url = api_url or current_app.config.get('RESEND_API_URL')
        self.timeout = timeout or current_app.config.get('EMAIL_TIMEOUT', 15)

    @classmethod
    def for_client(cls, client_id: Optional[int] = None) -> 'EmailClient':
        return cls(resolve_email_config(client_id))

    def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> EmailResult:
        if not self.config.is_configured:
            return EmailResult(success=False, scope=self.config.scope,
                               error='Email provider is not configured')
        if not to:
            return EmailResult(success=False, scope=self.config.scope,
                               error='Recipient has no email address')

        payload = {
            'from': self.config.sender,
            'to': [to],
            'subject': subject,
            'text': text,
            'html': html or text_to_html(text),
        }
        headers = {
            'Authorization': f'Bearer {self.config.api_key}',
            'Content-Type': 'application/json',
        }

        try:
            response = requests.post(self.api_url, headers=headers, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"Error sending email to {to}: {e}")
            return EmailResult(success=False, scope=self.config.scope, error=str(e))

        try:
            data = response.json()
        except ValueError:
            data = {}

        if 200 <= response.status_code < 300:
            logger.info(f"Email sent to {to}: {data.get('id')}")
            return EmailResult(success=True, message_id=data.get('id'), scope=self.config.scope)

        # Provider message is surfaced as-is
        error = data.get('message') if isinstance(data, dict) else None
        error = error or response.text or f'HTTP {response.status_code}'
        logger.error(f"Email provider rejected message to {to}: {error}")
        return EmailResult(success=False, scope=self.config.scope, error=error)
