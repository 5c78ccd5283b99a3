"""
Intent Classifier - Reads a supplier's reply to a negotiation message
"""
import logging
import re
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
from quoteflow.exceptions import LLMError
from quoteflow.integrations.llm_client import LLMClient

logger = logging.getLogger(__name__)

INTENT_ACCEPTED = 'accepted'
INTENT_COUNTER_OFFER = 'counter_offer'
INTENT_REJECTED = 'rejected'
INTENT_QUESTION = 'question'
INTENT_UNCLEAR = 'unclear'

INTENTS = (INTENT_ACCEPTED, INTENT_COUNTER_OFFER, INTENT_REJECTED, INTENT_QUESTION, INTENT_UNCLEAR)

@dataclass
class Classification:
    intent: str
    extracted_amount: Optional[float]
    confidence: float
    reasoning: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

def parse_amount(value) -> Optional[float]:
    """Number from model output: 950, "950", "R$ 1.234,56", "1,234.56"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None

    text = re.sub(r'[^\d.,]', '', str(value))
    if not text:
        return None
    if ',' in text and '.' in text:
        # The right-most separator is the decimal one
        if text.rfind(',') > text.rfind('.'):
            text = text.replace('.', '').replace(',', '.')
        else:
            text = text.replace(',', '')
    elif ',' in text:
        text = text.replace(',', '.') if len(text.split(',')[-1]) != 3 else text.replace(',', '')
    elif text.count('.') > 1 or (len(text.split('.')[-1]) == 3 and len(text.split('.')[0]) <= 3):
        text = text.replace('.', '')
    try:
        amount = float(text)
    except ValueError:
        return None
    return amount if amount > 0 else None

def parse_classification(data: Dict[str, Any]) -> Classification:
    intent = str(data.get('intent') or '').strip().lower()
    if intent not in INTENTS:
        intent = INTENT_UNCLEAR

    try:
        confidence = float(data.get('confidence') or 0)
    except (TypeError, ValueError):
        confidence = 0.0
    confidence = max(0.0, min(100.0, confidence))

    return Classification(
        intent=intent,
        extracted_amount=parse_amount(data.get('extracted_amount')),
        confidence=confidence,
        reasoning=str(data.get('reasoning') or '')
    )

class IntentClassifier:
    """Classify supplier replies into one of five intents."""

    def __init__(self, llm_client: Optional[LLMClient] = None):
        self.llm = llm_client or LLMClient()

    def classify(self, text: str, original_amount: float,
                 proposed_amount: Optional[float] = None,
                 client_id: Optional[int] = None) -> Optional[Classification]:
        """Return the classification, or None when the model is unavailable or unparseable."""
        proposed_line = f"\n- Valor que propusemos: R$ {proposed_amount:.2f}" if proposed_amount else ''
        prompt = f"""Você é um assistente que analisa respostas de fornecedores em negociações.

Contexto da negociação:
- Valor original da cotação: R$ {original_amount:.2f}{proposed_line}
- Já enviamos uma proposta de negociação por WhatsApp

Resposta do fornecedor:
"{text}"

Classifique a intenção do fornecedor:
1. "accepted" - aceitou explicitamente o valor proposto
2. "counter_offer" - fez uma contraproposta com novo valor (extrair valor)
3. "rejected" - recusou negociar ou disse que não pode baixar o preço
4. "question" - tem dúvida ou pediu mais informações
5. "unclear" - mensagem ambígua ou fora do contexto

Se houver menção de valor monetário (ex: "R$ 950", "950 reais"), extraia o valor numérico.

Responda APENAS com JSON válido:
{{
  "intent": "accepted" | "counter_offer" | "rejected" | "question" | "unclear",
  "extracted_amount": número ou null,
  "confidence": 0-100,
  "reasoning": "breve explicação"
}}"""

        try:
            data = self.llm.generate_json(prompt, 'intent_classification', max_tokens=300,
                                          temperature=0.3, client_id=client_id)
        except LLMError as e:
            logger.warning(f"Intent classification failed: {e}")
            return None

        classification = parse_classification(data)
        logger.info(f"Classified reply as {classification.intent} "
                    f"({classification.confidence:.0f}%, amount={classification.extracted_amount})")
        return classification
