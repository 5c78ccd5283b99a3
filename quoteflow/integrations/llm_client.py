"""
Language model client (OpenAI-compatible chat completions)
"""
import logging
import json
import re
from typing import Any, Dict, Optional
from flask import current_app
import requests
from quoteflow.extensions import db
from quoteflow.exceptions import LLMError
from quoteflow.models import AIUsageLog

logger = logging.getLogger(__name__)

class LLMClient:
    """Client for chat-completion style language model APIs."""

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None,
                 model: Optional[str] = None, timeout: Optional[float] = None):
        app_config = current_app.config
        self.api_key = api_key or app_config.get('LLM_API_KEY')
        self.api_url = api_url or app_config.get('LLM_API_URL')
        self.model = model or app_config.get('LLM_MODEL')
        self.timeout = timeout or app_config.get('LLM_TIMEOUT', 30)

        if not self.api_key:
            logger.error("LLM_API_KEY not found in configuration")

    def generate(self, prompt: str, operation: str, max_tokens: int = 500,
                 temperature: float = 0.3, client_id: Optional[int] = None) -> str:
        """Generate text for a prompt. Raises LLMError on any failure."""
        if not self.api_key:
            raise LLMError("Language model API key is not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            response = requests.post(self.api_url, headers=headers, json=payload, timeout=self.timeout)
            response.raise_for_status()
            result = response.json()
            content = result['choices'][0]['message']['content']
        except requests.exceptions.RequestException as e:
            logger.error(f"Error calling language model ({operation}): {e}")
            raise LLMError(f"Language model request failed: {e}", operation=operation)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected language model response ({operation}): {e}")
            raise LLMError("Language model returned an unexpected response", operation=operation)

        self._record_usage(result.get('usage') or {}, operation, client_id)
        return (content or '').strip()

    def generate_json(self, prompt: str, operation: str, **kwargs) -> Dict[str, Any]:
        """Generate and parse the first JSON object in the answer."""
        return extract_json(self.generate(prompt, operation, **kwargs))

    def _record_usage(self, usage: Dict[str, Any], operation: str, client_id: Optional[int]):
        prompt_tokens = usage.get('prompt_tokens', 0) or 0
        completion_tokens = usage.get('completion_tokens', 0) or 0
        db.session.add(AIUsageLog(
            client_id=client_id,
            operation=operation,
            model=self.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=usage.get('total_tokens') or prompt_tokens + completion_tokens
        ))
        logger.info(f"Language model call {operation}: {prompt_tokens + completion_tokens} tokens")

def extract_json(text: str) -> Dict[str, Any]:
    """Parse the JSON object embedded in a model answer."""
    json_match = re.search(r'\{.*\}', text or '', re.DOTALL)
    if not json_match:
        raise LLMError("No JSON object in language model answer")
    try:
        data = json.loads(json_match.group())
    except ValueError as e:
        raise LLMError(f"Unparseable JSON in language model answer: {e}")
    if not isinstance(data, dict):
        raise LLMError("Language model answer is not a JSON object")
    return data
