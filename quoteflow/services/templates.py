"""
Message template resolution and rendering.

Templates are looked up through an ordered list of resolvers (tenant default,
tenant active, global default, global active) and finally a built-in text
for the purposes the platform sends on its own. Rendering substitutes
``{{name}}`` placeholders and keeps or drops ``{{#if name}}...{{/if}}``
blocks depending on the variable's truthiness.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from quoteflow.exceptions import ConfigurationError
from quoteflow.models import MessageTemplate

logger = logging.getLogger(__name__)

_IF_BLOCK = re.compile(r'\{\{#if\s+(\w+)\s*\}\}(.*?)\{\{/if\}\}', re.DOTALL)
_PLACEHOLDER = re.compile(r'\{\{\s*(\w+)\s*\}\}')
_LEFTOVER = re.compile(r'\{\{[^{}]*\}\}')

SOURCE_CLIENT = 'client'
SOURCE_GLOBAL = 'global'
SOURCE_FALLBACK = 'fallback'

FALLBACK_TEMPLATES: Dict[str, Tuple[str, str]] = {
    'quote_request': (
        'Nova cotação: {{quote_title}}',
        "{{#if custom_message}}{{custom_message}}\n\n{{/if}}"
        "📋 *Nova cotação de {{client_name}}*\n\n"
        "Olá {{supplier_name}}!\n\n"
        "*{{quote_title}}*\n"
        "Itens ({{items_count}}):\n{{items_list}}\n\n"
        "Prazo: {{deadline_formatted}}\n\n"
        "Envie sua proposta em: {{proposal_link}}"
    ),
    'supplier_invite': (
        'Convite para cotação: {{quote_title}}',
        "{{#if custom_message}}{{custom_message}}\n\n{{/if}}"
        "Olá {{supplier_name}}!\n\n"
        "{{client_name}} convidou você para participar da cotação *{{quote_title}}*.\n\n"
        "Complete seu cadastro para enviar sua proposta: {{registration_link}}"
    ),
    'quote_reminder': (
        'Lembrete: cotação {{quote_title}}',
        "🔔 *Lembrete - Cotação Pendente*\n\n"
        "Olá {{supplier_name}}!\n\n"
        "Este é o *{{reminder_ordinal}} lembrete* sobre a cotação *{{quote_title}}*.\n"
        "{{#if client_name}}Cliente: {{client_name}}\n{{/if}}"
        "Prazo: {{deadline_formatted}}\n\n"
        "⏰ *Ainda não recebemos sua proposta!*\n\n"
        "📋 Para responder, acesse: {{proposal_link}}"
    ),
    'proposal_approved': (
        'Proposta aprovada: {{quote_title}}',
        "✅ Olá {{supplier_name}}!\n\n"
        "Sua proposta de {{amount_formatted}} para a cotação *{{quote_title}}* "
        "foi aprovada por {{client_name}}.\n\n"
        "Em breve entraremos em contato com os próximos passos."
    ),
    'proposal_rejected': (
        'Resultado da cotação: {{quote_title}}',
        "Olá {{supplier_name}}!\n\n"
        "Agradecemos sua proposta para a cotação *{{quote_title}}*. "
        "Desta vez {{client_name}} escolheu outra proposta.\n\n"
        "Contamos com você nas próximas oportunidades."
    ),
    'approval_request': (
        'Aprovação pendente: {{quote_title}}',
        "Olá {{approver_name}}!\n\n"
        "A proposta de {{supplier_name}} ({{amount_formatted}}) para a cotação "
        "*{{quote_title}}* aguarda sua aprovação ({{level_name}})."
        "{{#if comments}}\n\nObservações: {{comments}}{{/if}}"
    ),
    'negotiation_opening': (
        'Proposta de negociação: {{quote_title}}',
        "Olá {{supplier_name}}! Sobre a cotação {{quote_title}}, "
        "conseguiria fechar por {{proposed_amount_formatted}}? "
        "Buscamos uma parceria de longo prazo."
    ),
}


@dataclass
class RenderedTemplate:
    content: str
    subject: Optional[str] = None
    source: str = SOURCE_FALLBACK
    template_id: Optional[int] = None
    warnings: List[str] = field(default_factory=list)


def render_text(template: str, variables: Mapping[str, Any]) -> Tuple[str, List[str]]:
    """Substitute placeholders; return the text and any names left unresolved."""
    def _conditional(match):
        return match.group(2) if variables.get(match.group(1)) else ''

    def _placeholder(match):
        value = variables.get(match.group(1))
        return match.group(0) if value is None else str(value)

    text = _IF_BLOCK.sub(_conditional, template or '')
    text = _PLACEHOLDER.sub(_placeholder, text)
    unresolved = sorted(set(_LEFTOVER.findall(text)))
    return text, unresolved


# Template resolvers, evaluated in order
def _client_default(client_id, purpose):
    if not client_id:
        return None
    return MessageTemplate.query.filter_by(
        client_id=client_id, template_type=purpose, active=True, is_default=True
    ).first()

def _client_any(client_id, purpose):
    if not client_id:
        return None
    return MessageTemplate.query.filter_by(
        client_id=client_id, template_type=purpose, active=True
    ).order_by(MessageTemplate.created_at.desc()).first()

def _global_default(client_id, purpose):
    return MessageTemplate.query.filter_by(
        client_id=None, template_type=purpose, active=True, is_default=True
    ).first()

def _global_any(client_id, purpose):
    return MessageTemplate.query.filter_by(
        client_id=None, template_type=purpose, active=True
    ).order_by(MessageTemplate.created_at.desc()).first()

TEMPLATE_RESOLVERS: List[Tuple[str, Callable[[Optional[int], str], Optional[MessageTemplate]]]] = [
    (SOURCE_CLIENT, _client_default),
    (SOURCE_CLIENT, _client_any),
    (SOURCE_GLOBAL, _global_default),
    (SOURCE_GLOBAL, _global_any),
]


def resolve_template(client_id: Optional[int], purpose: str) -> Tuple[Optional[MessageTemplate], str]:
    """First stored template for (tenant, purpose) and its source."""
    for source, resolver in TEMPLATE_RESOLVERS:
        template = resolver(client_id, purpose)
        if template:
            return template, source
    return None, SOURCE_FALLBACK


def render_template(client_id: Optional[int], purpose: str,
                    variables: Mapping[str, Any]) -> RenderedTemplate:
    """Resolve and render the message for a purpose."""
    template, source = resolve_template(client_id, purpose)
    if template:
        subject_text, content_text, template_id = template.subject, template.message_content, template.id
    elif purpose in FALLBACK_TEMPLATES:
        subject_text, content_text = FALLBACK_TEMPLATES[purpose]
        template_id = None
    else:
        raise ConfigurationError(f"No template configured for '{purpose}'", purpose=purpose)

    content, warnings = render_text(content_text, variables)
    subject = None
    if subject_text:
        subject, subject_warnings = render_text(subject_text, variables)
        warnings = sorted(set(warnings) | set(subject_warnings))

    if warnings:
        logger.warning(f"Template '{purpose}' ({source}) has unresolved placeholders: {', '.join(warnings)}")

    return RenderedTemplate(content=content, subject=subject, source=source,
                            template_id=template_id, warnings=warnings)


# Formatting helpers shared by message builders
def format_currency(amount: Optional[float]) -> str:
    """Brazilian real, e.g. 1234.5 -> 'R$ 1.234,50'."""
    text = f"{amount or 0:,.2f}"
    return 'R$ ' + text.replace(',', '_').replace('.', ',').replace('_', '.')

def format_deadline(deadline: Optional[datetime]) -> str:
    return deadline.strftime('%d/%m/%Y %H:%M') if deadline else 'Não definido'

def format_items(items) -> str:
    if not items:
        return 'Nenhum item especificado'
    lines = []
    for item in items:
        quantity = int(item.quantity) if float(item.quantity).is_integer() else item.quantity
        lines.append(f"• {item.product_name} - Qtd: {quantity}")
    return '\n'.join(lines)
