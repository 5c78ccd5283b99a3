"""
QuoteFlow - Database Models
"""
from datetime import datetime
from enum import Enum
import json
from sqlalchemy import Index, UniqueConstraint
from quoteflow.extensions import db
from quoteflow.exceptions import ValidationError
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

# Enums
class QuoteStatus(Enum):
    DRAFT = "draft"
    SENT = "sent"
    PENDING_APPROVAL = "pending_approval"
    AWAITING_AI_APPROVAL = "awaiting_ai_approval"
    APPROVED = "approved"
    REJECTED = "rejected"

class SupplierStatus(Enum):
    """Per (quote, supplier) response status, ordered by rank"""
    PENDING = "pending"
    REMINDED_ONCE = "reminded_once"
    REMINDED_TWICE = "reminded_twice"
    RESPONDED = "responded"
    DECLINED = "declined"

class RegistrationStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"

class ResponseStatus(Enum):
    PENDING = "pending"
    SELECTED = "selected"
    APPROVED = "approved"
    REJECTED = "rejected"

class NegotiationStatus(Enum):
    ANALYZED = "analyzed"
    NEGOTIATING = "negotiating"
    AWAITING_APPROVAL = "awaiting_approval"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"

TERMINAL_NEGOTIATION_STATUSES = (
    NegotiationStatus.APPROVED.value,
    NegotiationStatus.REJECTED.value,
    NegotiationStatus.FAILED.value,
)

class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

class IntegrationType(Enum):
    WHATSAPP_EVOLUTION = "whatsapp_evolution"
    EMAIL_RESEND = "email_resend"

# Integration configuration aliases accepted when a configuration is written.
# Readers only ever see the canonical keys.
_CONFIG_ALIASES = {
    IntegrationType.WHATSAPP_EVOLUTION.value: {
        'api_url': ('api_url', 'evolution_api_url', 'url', 'base_url'),
        'token': ('token', 'evolution_token', 'api_key', 'apikey'),
        'instance': ('instance', 'evolution_instance', 'instance_name'),
        'send_endpoint': ('send_endpoint', 'evolution_send_endpoint'),
    },
    IntegrationType.EMAIL_RESEND.value: {
        'api_key': ('api_key', 'resend_api_key', 'apiKey', 'key', 'token'),
        'from_email': ('from_email', 'from', 'sender'),
        'from_name': ('from_name', 'sender_name'),
    },
}

_CONFIG_REQUIRED = {
    IntegrationType.WHATSAPP_EVOLUTION.value: ('api_url', 'token'),
    IntegrationType.EMAIL_RESEND.value: ('api_key',),
}

def normalize_integration_config(integration_type, raw):
    """Normalize a stored integration configuration to its canonical keys.

    Accepts a dict, a JSON string, a bare key string (email only) or a dict
    nesting the values under ``credentials``/``config``. Raises
    ValidationError when a required key is missing.
    """
    if integration_type not in _CONFIG_ALIASES:
        raise ValidationError(f"Unknown integration type: {integration_type}")

    data = raw
    if isinstance(data, str):
        text = data.strip()
        try:
            data = json.loads(text)
        except ValueError:
            if integration_type != IntegrationType.EMAIL_RESEND.value:
                raise ValidationError(f"Configuration for {integration_type} must be a JSON object")
            data = {'api_key': text}
    if not isinstance(data, dict):
        raise ValidationError(f"Configuration for {integration_type} must be a JSON object")

    flat = dict(data)
    for nested_key in ('credentials', 'config'):
        nested = flat.pop(nested_key, None)
        if isinstance(nested, dict):
            for key, value in nested.items():
                flat.setdefault(key, value)

    normalized = {}
    for canonical, aliases in _CONFIG_ALIASES[integration_type].items():
        for alias in aliases:
            value = flat.get(alias)
            if isinstance(value, str):
                value = value.strip()
            if value:
                normalized[canonical] = value
                break

    missing = [key for key in _CONFIG_REQUIRED[integration_type] if not normalized.get(key)]
    if missing:
        raise ValidationError(
            f"Configuration for {integration_type} is missing: {', '.join(missing)}",
            missing=missing
        )

    if 'api_url' in normalized:
        normalized['api_url'] = normalized['api_url'].rstrip('/')
    return normalized

# Models
class Client(db.Model):
    """Buyer organisation (tenant)."""
    __tablename__ = 'clients'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(120))
    phone = db.Column(db.String(30))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    users = db.relationship('User', back_populates='client')
    quotes = db.relationship('Quote', back_populates='client')

    def __repr__(self):
        return f'<Client {self.name}>'

class User(UserMixin, db.Model):
    """User account (buyer staff and approvers)"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(100))
    password_hash = db.Column(db.String(255))
    role = db.Column(db.String(50), nullable=False, default='buyer')

    # Status
    is_active = db.Column(db.Boolean, default=True)

    # Timestamps
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, onupdate=datetime.utcnow)

    # Relationships
    client = db.relationship('Client', back_populates='users')
    notifications = db.relationship('Notification', back_populates='user')

    def set_password(self, password):
        """Set password hash"""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Check password against hash"""
        return check_password_hash(self.password_hash, password)

    def __repr__(self):
        return f'<User {self.email}>'

class Supplier(db.Model):
    """Supplier model."""
    __tablename__ = 'suppliers'

    id = db.Column(db.Integer, primary_key=True)
    # NULL means the supplier belongs to the shared network visible to every client
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(120))
    phone = db.Column(db.String(30))
    whatsapp = db.Column(db.String(30))
    is_certified = db.Column(db.Boolean, default=False)
    registration_status = db.Column(db.String(20), nullable=False, default='pending')  # pending, active
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_supplier_phones', 'whatsapp', 'phone'),
    )

    @property
    def is_registered(self):
        return self.registration_status == RegistrationStatus.ACTIVE.value

    @property
    def contact_phone(self):
        """Phone used for chat delivery, WhatsApp number first."""
        return self.whatsapp or self.phone

    def __repr__(self):
        return f'<Supplier {self.name}>'

class Quote(db.Model):
    """Request for quote."""
    __tablename__ = 'quotes'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    status = db.Column(db.String(50), nullable=False, default='draft')  # Maps to QuoteStatus values
    total = db.Column(db.Float, default=0.0)
    target_amount = db.Column(db.Float)
    deadline = db.Column(db.DateTime)

    # Awarded supplier, set when a proposal is approved
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'))

    sent_at = db.Column(db.DateTime)
    suppliers_sent_count = db.Column(db.Integer, default=0)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    client = db.relationship('Client', back_populates='quotes')
    supplier = db.relationship('Supplier')
    items = db.relationship('QuoteItem', back_populates='quote', cascade='all, delete-orphan',
                            order_by='QuoteItem.id')
    responses = db.relationship('QuoteResponse', back_populates='quote', order_by='QuoteResponse.id')

    __table_args__ = (
        Index('idx_quote_status', 'status'),
    )

    def __repr__(self):
        return f'<Quote {self.id} {self.status}>'

class QuoteItem(db.Model):
    """Quote line item."""
    __tablename__ = 'quote_items'

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id'), nullable=False)
    product_name = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Float, nullable=False, default=1)
    unit_price = db.Column(db.Float)
    total = db.Column(db.Float)

    # Relationships
    quote = db.relationship('Quote', back_populates='items')

class QuoteSupplierStatus(db.Model):
    """Response tracking per (quote, supplier)."""
    __tablename__ = 'quote_supplier_status'

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id'), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')  # Maps to SupplierStatus values
    last_reminder_sent_at = db.Column(db.DateTime)
    responded_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    quote = db.relationship('Quote')
    supplier = db.relationship('Supplier')

    __table_args__ = (
        UniqueConstraint('quote_id', 'supplier_id', name='uq_quote_supplier_status'),
        Index('idx_quote_supplier_status', 'quote_id', 'status'),
    )

    def __repr__(self):
        return f'<QuoteSupplierStatus quote={self.quote_id} supplier={self.supplier_id} {self.status}>'

class QuoteToken(db.Model):
    """Per-supplier response link token."""
    __tablename__ = 'quote_tokens'

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id'), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), nullable=False)
    full_token = db.Column(db.String(100), nullable=False, unique=True)
    short_code = db.Column(db.String(16), nullable=False, unique=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Relationships
    quote = db.relationship('Quote')
    supplier = db.relationship('Supplier')

    __table_args__ = (
        UniqueConstraint('quote_id', 'supplier_id', name='uq_quote_token_pair'),
    )

    def is_expired(self, now=None):
        return (now or datetime.utcnow()) >= self.expires_at

class QuoteResponse(db.Model):
    """Supplier proposal for a quote."""
    __tablename__ = 'quote_responses'

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id'), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), nullable=False)
    total_amount = db.Column(db.Float, nullable=False)
    delivery_time = db.Column(db.Integer)  # days
    payment_terms = db.Column(db.String(100))
    notes = db.Column(db.Text)
    status = db.Column(db.String(20), nullable=False, default='pending')  # Maps to ResponseStatus values
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    quote = db.relationship('Quote', back_populates='responses')
    supplier = db.relationship('Supplier')

    __table_args__ = (
        Index('idx_response_quote_status', 'quote_id', 'status'),
    )

    def __repr__(self):
        return f'<QuoteResponse {self.id} {self.total_amount} {self.status}>'

class Negotiation(db.Model):
    """Automated negotiation thread for a quote."""
    __tablename__ = 'negotiations'

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id'), nullable=False)
    supplier_id = db.Column(db.Integer, db.ForeignKey('suppliers.id'), nullable=False)
    selected_response_id = db.Column(db.Integer, db.ForeignKey('quote_responses.id'), nullable=False)

    original_amount = db.Column(db.Float, nullable=False)
    negotiated_amount = db.Column(db.Float)
    discount_percentage = db.Column(db.Float)
    status = db.Column(db.String(30), nullable=False, default='analyzed')  # Maps to NegotiationStatus values

    ai_analysis = db.Column(db.JSON)  # {reason, strategy, targetDiscount}
    negotiation_strategy = db.Column(db.JSON)  # {reason, strategy, targetDiscount, marketAverage, negotiationPotential, viable}

    human_approved = db.Column(db.Boolean)
    approved_by_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    quote = db.relationship('Quote')
    supplier = db.relationship('Supplier')
    selected_response = db.relationship('QuoteResponse')
    messages = db.relationship('NegotiationMessage', back_populates='negotiation',
                               order_by='NegotiationMessage.sequence',
                               cascade='all, delete-orphan')

    __table_args__ = (
        Index('idx_negotiation_status_created', 'status', 'created_at'),
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_NEGOTIATION_STATUSES

    @property
    def conversation_log(self):
        """Ordered conversation log as plain dicts."""
        return [message.to_dict() for message in self.messages]

    def to_dict(self):
        return {
            'id': self.id,
            'quote_id': self.quote_id,
            'supplier_id': self.supplier_id,
            'selected_response_id': self.selected_response_id,
            'original_amount': self.original_amount,
            'negotiated_amount': self.negotiated_amount,
            'discount_percentage': self.discount_percentage,
            'status': self.status,
            'ai_analysis': self.ai_analysis,
            'negotiation_strategy': self.negotiation_strategy,
            'human_approved': self.human_approved,
            'conversation_log': self.conversation_log,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f'<Negotiation {self.id} quote={self.quote_id} {self.status}>'

class NegotiationMessage(db.Model):
    """One conversation log entry; (negotiation_id, sequence) is the append key."""
    __tablename__ = 'negotiation_messages'

    id = db.Column(db.Integer, primary_key=True)
    negotiation_id = db.Column(db.Integer, db.ForeignKey('negotiations.id'), nullable=False)
    sequence = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(20), nullable=False)  # ai, supplier
    message = db.Column(db.Text, nullable=False)
    channel = db.Column(db.String(20))  # whatsapp, email
    parsed = db.Column(db.JSON)  # {intent, extracted_amount, confidence, reasoning}
    message_metadata = db.Column(db.JSON)  # {scope, endpoint, phone, message_id, ...}
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    negotiation = db.relationship('Negotiation', back_populates='messages')

    __table_args__ = (
        UniqueConstraint('negotiation_id', 'sequence', name='uq_negotiation_message_sequence'),
    )

    def to_dict(self):
        entry = {
            'role': self.role,
            'message': self.message,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'channel': self.channel,
            'parsed': self.parsed,
        }
        if self.message_metadata:
            entry.update(self.message_metadata)
        return entry

class ApprovalLevel(db.Model):
    """Amount threshold that requires human sign-off."""
    __tablename__ = 'approval_levels'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    amount_threshold = db.Column(db.Float, nullable=False, default=0.0)
    approvers = db.Column(db.JSON, default=list)  # [user ids]
    active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_approval_level_client', 'client_id', 'active', 'amount_threshold'),
    )

    def __repr__(self):
        return f'<ApprovalLevel {self.name} >= {self.amount_threshold}>'

class Approval(db.Model):
    """One approver's decision on a selected proposal"""
    __tablename__ = 'approvals'

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id'), nullable=False)
    quote_response_id = db.Column(db.Integer, db.ForeignKey('quote_responses.id'), nullable=False)
    approval_level_id = db.Column(db.Integer, db.ForeignKey('approval_levels.id'))
    approver_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')  # Maps to ApprovalStatus values
    comments = db.Column(db.Text)
    decided_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    quote = db.relationship('Quote')
    quote_response = db.relationship('QuoteResponse')
    approval_level = db.relationship('ApprovalLevel')
    approver = db.relationship('User')

    __table_args__ = (
        UniqueConstraint('quote_response_id', 'approver_id', name='uq_approval_response_approver'),
    )

    def __repr__(self):
        return f'<Approval {self.status} for Quote {self.quote_id} by User {self.approver_id}>'

class Notification(db.Model):
    """Notifications for users"""
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    # Notification details
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    notification_type = db.Column(db.String(50), nullable=False)  # ai_negotiation, approval_request, ...
    priority = db.Column(db.String(20), nullable=False, default='normal')  # low, normal, high

    # Status
    channel = db.Column(db.String(20), nullable=False, default='in_app')
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, sent, failed, read
    sent_at = db.Column(db.DateTime)
    read_at = db.Column(db.DateTime)

    # Context
    related_type = db.Column(db.String(50))  # negotiation, approval, quote
    related_id = db.Column(db.Integer)
    notification_metadata = db.Column(db.JSON)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    user = db.relationship('User', back_populates='notifications')

    def __repr__(self):
        return f'<Notification {self.notification_type} to User {self.user_id}>'

class AuditLog(db.Model):
    """Comprehensive audit trail"""
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))

    # Actor
    actor_type = db.Column(db.String(20), nullable=False)  # user, agent, system, webhook
    actor_id = db.Column(db.String(50), nullable=False)  # user_id or agent name
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'))

    # Action
    action = db.Column(db.String(100), nullable=False)
    object_type = db.Column(db.String(50), nullable=False)
    object_id = db.Column(db.Integer)

    # Details
    details = db.Column(db.JSON)
    result = db.Column(db.String(20), nullable=False, default='success')  # success, failure, partial, warning
    severity = db.Column(db.String(20), nullable=False, default='info')  # info, warning, critical
    error_message = db.Column(db.Text)

    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_audit_action', 'action', 'timestamp'),
    )

    def __repr__(self):
        return f'<AuditLog {self.action} by {self.actor_type}:{self.actor_id}>'

class Integration(db.Model):
    """Channel credentials, per client or global (client_id NULL)."""
    __tablename__ = 'integrations'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))
    integration_type = db.Column(db.String(50), nullable=False)  # Maps to IntegrationType values
    active = db.Column(db.Boolean, default=True)
    configuration = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_integration_lookup', 'integration_type', 'client_id', 'active'),
    )

    def set_configuration(self, raw):
        """Validate and store a configuration in canonical form."""
        self.configuration = normalize_integration_config(self.integration_type, raw)

    def __repr__(self):
        scope = f'client {self.client_id}' if self.client_id else 'global'
        return f'<Integration {self.integration_type} ({scope})>'

class MessageTemplate(db.Model):
    """Outbound message template, per client or global (client_id NULL)."""
    __tablename__ = 'message_templates'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))
    template_type = db.Column(db.String(50), nullable=False)  # quote_request, quote_reminder, ...
    name = db.Column(db.String(100), nullable=False)
    subject = db.Column(db.String(200))
    message_content = db.Column(db.Text, nullable=False)
    active = db.Column(db.Boolean, default=True)
    is_default = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('idx_template_lookup', 'template_type', 'client_id', 'active'),
    )

class SystemSetting(db.Model):
    """Key/value settings, per client or global (client_id NULL)."""
    __tablename__ = 'system_settings'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))
    setting_key = db.Column(db.String(100), nullable=False)
    setting_value = db.Column(db.JSON)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('client_id', 'setting_key', name='uq_setting_scope_key'),
    )

class AIUsageLog(db.Model):
    """Token usage per language-model call, for cost accounting."""
    __tablename__ = 'ai_usage_logs'

    id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'))
    operation = db.Column(db.String(50), nullable=False)  # negotiation_analysis, intent_classification, ...
    model = db.Column(db.String(100))
    prompt_tokens = db.Column(db.Integer, default=0)
    completion_tokens = db.Column(db.Integer, default=0)
    total_tokens = db.Column(db.Integer, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f'<AIUsageLog {self.operation} {self.total_tokens} tokens>'
