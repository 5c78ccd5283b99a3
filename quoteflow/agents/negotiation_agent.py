"""
Negotiation Agent - Analyzes proposals and opens price negotiations with suppliers
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from flask import current_app
from quoteflow.extensions import db
from quoteflow.exceptions import InvalidStateError, LLMError, NotFoundError, ValidationError
from quoteflow.integrations.evolution_client import CLIENT_FIRST_SCOPE_ORDER, send_whatsapp
from quoteflow.integrations.llm_client import LLMClient
from quoteflow.models import (Negotiation, NegotiationStatus, Quote, QuoteResponse, QuoteStatus,
                              ResponseStatus, TERMINAL_NEGOTIATION_STATUSES)
from quoteflow.services.conversation_log import append_message
from quoteflow.services.templates import format_currency, render_template
from quoteflow.utils.audit import record_audit

logger = logging.getLogger(__name__)

MIN_TARGET_DISCOUNT = 3.0
MAX_TARGET_DISCOUNT = 15.0
DEFAULT_TARGET_DISCOUNT = 8.0
MAX_OPENING_MESSAGE_LENGTH = 200

def negotiation_potential(amounts: List[float], market_factor: float = 0.85) -> Tuple[float, float, float]:
    """Return (lowest, mean, potential %) for a set of proposal amounts.

    potential = ((lowest - factor * mean) / lowest) * 100; it is negative
    whenever the lowest proposal is already below the discounted mean.
    """
    lowest = min(amounts)
    mean = sum(amounts) / len(amounts)
    potential = ((lowest - market_factor * mean) / lowest) * 100
    return lowest, mean, potential

def fallback_discount(potential: float) -> float:
    return min(max(potential * 0.6, MIN_TARGET_DISCOUNT), MAX_TARGET_DISCOUNT)

def clamp_discount(value, potential: float) -> float:
    """Model's target discount bounded to 3-15%, or the fallback when unusable."""
    try:
        discount = float(value)
    except (TypeError, ValueError):
        return fallback_discount(potential)
    return min(max(discount, MIN_TARGET_DISCOUNT), MAX_TARGET_DISCOUNT)

class NegotiationAgent:
    """Drive a quote's negotiation from analysis to the opening message."""

    def __init__(self, llm_client: Optional[LLMClient] = None):
        self.name = 'negotiation_agent'
        self.llm = llm_client or LLMClient()
        self.viability_threshold = current_app.config.get('NEGOTIATION_VIABILITY_THRESHOLD', 5.0)
        self.market_factor = current_app.config.get('NEGOTIATION_MARKET_FACTOR', 0.85)

    # Analysis
    def analyze(self, quote_id: int) -> Dict[str, Any]:
        """Compute negotiation potential for a quote and persist it as an analyzed negotiation."""
        quote = db.session.get(Quote, quote_id)
        if not quote:
            raise NotFoundError(f"Quote {quote_id} not found")

        responses = [
            response for response in quote.responses
            if response.total_amount and response.status != ResponseStatus.REJECTED.value
        ]
        if not responses:
            raise ValidationError(f"Quote {quote_id} has no proposals to analyze")

        active = Negotiation.query.filter(
            Negotiation.quote_id == quote_id,
            Negotiation.status.notin_(TERMINAL_NEGOTIATION_STATUSES + (NegotiationStatus.ANALYZED.value,))
        ).first()
        if active:
            raise InvalidStateError(
                f"Quote {quote_id} already has a negotiation in progress ({active.status})",
                negotiation_id=active.id
            )

        best = min(responses, key=lambda response: (response.total_amount, response.id))
        lowest, mean, potential = negotiation_potential(
            [response.total_amount for response in responses], self.market_factor
        )
        viable = potential > self.viability_threshold

        if viable:
            analysis = self._generate_analysis(quote, best, mean, potential)
        else:
            analysis = {
                'reason': 'Melhor proposta já está abaixo da referência de mercado',
                'strategy': None,
                'targetDiscount': 0,
            }

        negotiation = Negotiation.query.filter_by(
            quote_id=quote_id, status=NegotiationStatus.ANALYZED.value
        ).order_by(Negotiation.created_at.desc()).first()
        if negotiation is None:
            negotiation = Negotiation(quote_id=quote_id, status=NegotiationStatus.ANALYZED.value)
            db.session.add(negotiation)

        negotiation.supplier_id = best.supplier_id
        negotiation.selected_response_id = best.id
        negotiation.original_amount = best.total_amount
        negotiation.negotiated_amount = None
        negotiation.discount_percentage = None
        negotiation.ai_analysis = analysis
        negotiation.negotiation_strategy = {
            'reason': analysis['reason'],
            'strategy': analysis['strategy'],
            'targetDiscount': analysis['targetDiscount'],
            'marketAverage': round(mean, 2),
            'negotiationPotential': round(potential, 2),
            'lowestAmount': lowest,
            'viable': viable,
            'model': self.llm.model if viable else None,
        }
        db.session.flush()

        record_audit(
            action='AI_NEGOTIATION_ANALYZED',
            object_type='negotiation',
            object_id=negotiation.id,
            client_id=quote.client_id,
            actor_type='agent',
            actor_id=self.name,
            details={'quote_id': quote_id, 'potential': round(potential, 2), 'viable': viable}
        )
        db.session.commit()

        logger.info(f"Quote {quote_id} analyzed: potential {potential:.1f}% (viable={viable})")
        return {'negotiation': negotiation.to_dict(), 'should_negotiate': viable, 'analysis': analysis}

    def _generate_analysis(self, quote: Quote, best: QuoteResponse,
                           mean: float, potential: float) -> Dict[str, Any]:
        items = '\n'.join(
            f"- {item.product_name} (Qtd: {item.quantity})" for item in quote.items
        ) or '- (sem itens detalhados)'
        prompt = f"""Você é um especialista em negociações comerciais brasileiras. Analise esta situação:

Cotação: {quote.title or quote.description}

Itens solicitados:
{items}
Melhor proposta atual: {format_currency(best.total_amount)}
Fornecedor: {best.supplier.name if best.supplier else ''}
Preço médio das propostas: {format_currency(mean)}
Margem de negociação estimada: {potential:.1f}%

Forneça uma análise em português com:
1. Razão para negociar (máximo 150 caracteres)
2. Estratégia de negociação (máximo 200 caracteres)
3. Desconto objetivo realista (percentual entre 3-15%)

Responda APENAS no formato JSON:
{{
  "reason": "razão aqui",
  "strategy": "estratégia aqui",
  "targetDiscount": numero_percentual
}}"""

        try:
            data = self.llm.generate_json(prompt, 'negotiation_analysis', max_tokens=500,
                                          temperature=0.2, client_id=quote.client_id)
            if not data.get('reason') or not data.get('strategy'):
                raise LLMError("Analysis is missing reason or strategy")
            return {
                'reason': str(data['reason'])[:150],
                'strategy': str(data['strategy'])[:200],
                'targetDiscount': round(clamp_discount(data.get('targetDiscount'), potential), 2),
            }
        except LLMError as e:
            logger.warning(f"Using fallback negotiation analysis for quote {quote.id}: {e}")
            return {
                'reason': 'Preço acima da média de mercado, há margem para negociação',
                'strategy': 'Abordagem colaborativa enfatizando relacionamento de longo prazo',
                'targetDiscount': round(fallback_discount(potential), 2),
            }

    # Initiation
    def initiate(self, negotiation_id: int) -> Dict[str, Any]:
        """Send the opening message. Failures leave the negotiation as it was."""
        negotiation = db.session.get(Negotiation, negotiation_id)
        if not negotiation:
            raise NotFoundError(f"Negotiation {negotiation_id} not found")
        if negotiation.status != NegotiationStatus.ANALYZED.value:
            raise InvalidStateError(
                f"Negotiation {negotiation_id} cannot be initiated from status {negotiation.status}",
                status=negotiation.status
            )
        strategy = negotiation.negotiation_strategy or {}
        if not strategy.get('viable'):
            raise InvalidStateError(f"Negotiation {negotiation_id} was not considered viable")

        supplier = negotiation.supplier
        phone = supplier.contact_phone if supplier else None
        if not phone:
            raise ValidationError(f"Supplier of negotiation {negotiation_id} has no phone number")

        quote = negotiation.quote
        target = float(strategy.get('targetDiscount') or DEFAULT_TARGET_DISCOUNT)
        proposed = round(negotiation.original_amount * (1 - target / 100), 2)

        message_source = 'ai'
        try:
            message = self._generate_opening_message(negotiation, proposed)
        except LLMError as e:
            logger.warning(f"Opening message for negotiation {negotiation.id} falls back to template: {e}")
            message = self._template_opening_message(negotiation, proposed)
            message_source = 'template'

        delivery = send_whatsapp(quote.client_id, phone, message, scopes=CLIENT_FIRST_SCOPE_ORDER)
        if not delivery.success:
            return self._initiation_failed(negotiation, 'delivery', delivery.error,
                                           attempted_endpoints=delivery.attempted_endpoints)

        append_message(
            negotiation.id, 'ai', message, channel='whatsapp',
            metadata={
                'scope': delivery.scope,
                'endpoint': delivery.endpoint,
                'message_id': delivery.message_id,
                'phone': phone,
                'proposed_amount': proposed,
                'message_source': message_source,
            }
        )

        negotiation.status = NegotiationStatus.NEGOTIATING.value
        negotiation.negotiated_amount = proposed
        negotiation.discount_percentage = target
        quote.status = QuoteStatus.AWAITING_AI_APPROVAL.value

        record_audit(
            action='AI_NEGOTIATION_STARTED',
            object_type='negotiation',
            object_id=negotiation.id,
            client_id=quote.client_id,
            actor_type='agent',
            actor_id=self.name,
            details={'supplier_id': supplier.id, 'proposed_amount': proposed,
                     'scope': delivery.scope, 'endpoint': delivery.endpoint}
        )
        db.session.commit()

        logger.info(f"Negotiation {negotiation.id} started with supplier {supplier.id} "
                    f"via {delivery.scope} gateway config")
        return {
            'success': True,
            'message_sent': message,
            'message_source': message_source,
            'delivery_channel': {
                'channel': 'whatsapp',
                'scope': delivery.scope,
                'endpoint': delivery.endpoint,
                'message_id': delivery.message_id,
            },
            'negotiation': negotiation.to_dict(),
        }

    def _generate_opening_message(self, negotiation: Negotiation, proposed: float) -> str:
        strategy = negotiation.negotiation_strategy or {}
        prompt = f"""Você é um assistente de compras profissional iniciando uma negociação comercial.

Contexto:
- Proposta atual: {format_currency(negotiation.original_amount)}
- Valor proposto: {format_currency(proposed)}
- Estratégia: {strategy.get('strategy')}
- Razão: {strategy.get('reason')}

Escreva UMA mensagem de abertura de negociação em português, sendo:
- Profissional e respeitosa
- Máximo {MAX_OPENING_MESSAGE_LENGTH} caracteres
- Enfatizando parceria de longo prazo
- Propondo o valor específico

Responda APENAS a mensagem, sem aspas ou formatação."""

        text = self.llm.generate(prompt, 'negotiation_opening', max_tokens=300, temperature=0.7,
                                 client_id=negotiation.quote.client_id)
        text = text.strip().strip('"').strip()
        if not text:
            raise LLMError("Empty opening message")
        return text[:MAX_OPENING_MESSAGE_LENGTH]

    def _template_opening_message(self, negotiation: Negotiation, proposed: float) -> str:
        quote = negotiation.quote
        rendered = render_template(quote.client_id, 'negotiation_opening', {
            'supplier_name': negotiation.supplier.name,
            'quote_title': quote.title,
            'original_amount_formatted': format_currency(negotiation.original_amount),
            'proposed_amount_formatted': format_currency(proposed),
        })
        return rendered.content[:MAX_OPENING_MESSAGE_LENGTH]

    def _initiation_failed(self, negotiation: Negotiation, stage: str, error: Optional[str],
                           **details) -> Dict[str, Any]:
        logger.error(f"Negotiation {negotiation.id} initiation failed at {stage}: {error}")
        record_audit(
            action='AI_NEGOTIATION_START_FAILED',
            object_type='negotiation',
            object_id=negotiation.id,
            client_id=negotiation.quote.client_id,
            actor_type='agent',
            actor_id=self.name,
            details=dict(stage=stage, **details),
            result='failure',
            severity='warning',
            error_message=error
        )
        db.session.commit()
        return {'success': False, 'stage': stage, 'error': error, **details}

# Human override
def _resolve(negotiation_id: int, status: str, approved: bool, user_id: Optional[int]) -> Negotiation:
    negotiation = db.session.get(Negotiation, negotiation_id)
    if not negotiation:
        raise NotFoundError(f"Negotiation {negotiation_id} not found")

    previous = negotiation.status
    negotiation.status = status
    negotiation.human_approved = approved
    negotiation.approved_by_id = user_id
    negotiation.completed_at = datetime.utcnow()

    record_audit(
        action='AI_NEGOTIATION_APPROVED' if approved else 'AI_NEGOTIATION_REJECTED',
        object_type='negotiation',
        object_id=negotiation.id,
        client_id=negotiation.quote.client_id,
        actor_type='user' if user_id else 'system',
        actor_id=user_id or 'system',
        user_id=user_id,
        details={'previous_status': previous, 'negotiated_amount': negotiation.negotiated_amount}
    )
    db.session.commit()
    return negotiation

def approve_negotiation(negotiation_id: int, user_id: Optional[int] = None) -> Negotiation:
    return _resolve(negotiation_id, NegotiationStatus.APPROVED.value, True, user_id)

def reject_negotiation(negotiation_id: int, user_id: Optional[int] = None) -> Negotiation:
    return _resolve(negotiation_id, NegotiationStatus.REJECTED.value, False, user_id)
