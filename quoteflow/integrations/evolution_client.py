"""
WhatsApp delivery through an Evolution API gateway.

The gateway's request contract differs between versions and deployments, so
sending walks a fixed, ordered list of delivery strategies (endpoint path x
auth header x payload shape) and stops at the first 2xx answer. Every path is
tried once with the primary header and payload before any alternate shape, and
a path the gateway answers with 404/405 is not probed again. The strategy
that worked is remembered in Redis per tenant and configuration scope and is
tried first on the next send.

Nothing here raises past the module boundary: every send returns a
DeliveryResult.
"""
import logging
import re
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote
import requests
from flask import current_app
from quoteflow.models import Integration, IntegrationType
from quoteflow.utils.redis_manager import redis_manager

logger = logging.getLogger(__name__)

SCOPE_ENV = 'env'
SCOPE_CLIENT = 'client'
SCOPE_GLOBAL = 'global'
SCOPE_NONE = 'none'

# Operational default: static environment config wins over stored integrations
DEFAULT_SCOPE_ORDER = (SCOPE_ENV, SCOPE_CLIENT, SCOPE_GLOBAL)
# Negotiation prefers the tenant's own number
CLIENT_FIRST_SCOPE_ORDER = (SCOPE_CLIENT, SCOPE_GLOBAL, SCOPE_ENV)

SEND_PATHS = (
    'message/sendText/{instance}',
    'message/send',
    'chat/send',
    'sendMessage',
)

# No such route on this gateway, whatever the headers or body
MISSING_ROUTE_STATUSES = (404, 405)

STATUS_PATHS = (
    ('Instance Info', 'instance/fetchInstances'),
    ('Connection State', 'instance/connectionState/{instance}'),
    ('Instance Status', 'instance/status/{instance}'),
)

HEADER_STYLES: Dict[str, Callable[[str], Dict[str, str]]] = {
    'apikey': lambda token: {'apikey': token},
    'bearer': lambda token: {'Authorization': f'Bearer {token}'},
    'x-api-key': lambda token: {'X-API-Key': token},
    'authorization': lambda token: {'Authorization': token},
}

PAYLOAD_SHAPES: Dict[str, Callable[[str, str], Dict[str, Any]]] = {
    'number_text': lambda number, text: {'number': number, 'text': text},
    'number_text_message': lambda number, text: {'number': number, 'textMessage': {'text': text}},
    'phone_message': lambda number, text: {'phone': number, 'message': text},
    'to_message': lambda number, text: {'to': number, 'message': text},
    'chat_id_message': lambda number, text: {'chatId': number, 'message': text},
    'recipient_body': lambda number, text: {'recipient': number, 'body': text},
}


@dataclass
class EvolutionConfig:
    """Resolved gateway configuration and where it came from."""
    api_url: str = ''
    token: str = ''
    instance: Optional[str] = None
    send_endpoint: Optional[str] = None
    scope: str = SCOPE_NONE

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.token)


@dataclass
class DeliveryResult:
    """Outcome of one chat send."""
    success: bool
    scope: str = SCOPE_NONE
    endpoint: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempted_endpoints: List[str] = field(default_factory=list)
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DeliveryStrategy:
    """One request shape the gateway might accept."""
    path: str
    header_style: str
    payload_shape: str

    def build_request(self, config: EvolutionConfig, number: str, text: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = {'Content-Type': 'application/json'}
        headers.update(HEADER_STYLES[self.header_style](config.token))
        body = PAYLOAD_SHAPES[self.payload_shape](number, text)
        return _join_url(config, self.path), headers, body

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


def normalize_phone(raw: Optional[str], default_country: str = '55') -> str:
    """Digits only, with the default country code prepended when none is recognisable.

    A number is taken to carry a country code when it was written with a
    leading '+' or has 12 or more digits, which also makes the function
    idempotent for local numbers of 10-11 digits.
    """
    text = (raw or '').strip()
    digits = re.sub(r'\D', '', text)
    if not digits:
        return ''
    if text.startswith('+') or len(digits) >= 12:
        return digits
    return f'{default_country}{digits}'


def _join_url(config: EvolutionConfig, path: str) -> str:
    instance = quote(config.instance, safe='') if config.instance else ''
    target = path.replace('{instance}', instance)
    if re.match(r'^https?://', target, re.IGNORECASE):
        return target
    return f"{config.api_url.rstrip('/')}/{target.lstrip('/')}"


def build_strategies(config: EvolutionConfig) -> List[DeliveryStrategy]:
    """Ordered, deterministic list of strategies for a configuration."""
    if config.send_endpoint:
        paths = [config.send_endpoint.strip()]
    else:
        paths = [path for path in SEND_PATHS if config.instance or '{instance}' not in path]
        if config.instance:
            paths += ['{instance}/' + path for path in SEND_PATHS if '{instance}' not in path]

    shapes = [(header_style, payload_shape)
              for header_style in HEADER_STYLES
              for payload_shape in PAYLOAD_SHAPES]
    primary, alternates = shapes[0], shapes[1:]

    strategies = [DeliveryStrategy(path, *primary) for path in paths]
    strategies += [DeliveryStrategy(path, *shape) for path in paths for shape in alternates]
    return strategies


# Configuration resolution
def _config_from_integration(integration: Optional[Integration], scope: str) -> Optional[EvolutionConfig]:
    if not integration or not integration.configuration:
        return None
    cfg = integration.configuration
    config = EvolutionConfig(
        api_url=(cfg.get('api_url') or '').rstrip('/'),
        token=cfg.get('token') or '',
        instance=cfg.get('instance'),
        send_endpoint=cfg.get('send_endpoint'),
        scope=scope
    )
    return config if config.is_configured else None


def _active_integration(client_id: Optional[int]) -> Optional[Integration]:
    return Integration.query.filter_by(
        integration_type=IntegrationType.WHATSAPP_EVOLUTION.value,
        client_id=client_id,
        active=True
    ).order_by(Integration.updated_at.desc()).first()


def resolve_env_config(client_id: Optional[int] = None) -> Optional[EvolutionConfig]:
    app_config = current_app.config
    config = EvolutionConfig(
        api_url=(app_config.get('EVOLUTION_API_URL') or '').rstrip('/'),
        token=app_config.get('EVOLUTION_API_TOKEN') or '',
        instance=app_config.get('EVOLUTION_INSTANCE'),
        send_endpoint=app_config.get('EVOLUTION_SEND_ENDPOINT'),
        scope=SCOPE_ENV
    )
    return config if config.is_configured else None


def resolve_client_config(client_id: Optional[int] = None) -> Optional[EvolutionConfig]:
    if not client_id:
        return None
    return _config_from_integration(_active_integration(client_id), SCOPE_CLIENT)


def resolve_global_config(client_id: Optional[int] = None) -> Optional[EvolutionConfig]:
    return _config_from_integration(_active_integration(None), SCOPE_GLOBAL)


SCOPE_RESOLVERS = {
    SCOPE_ENV: resolve_env_config,
    SCOPE_CLIENT: resolve_client_config,
    SCOPE_GLOBAL: resolve_global_config,
}


def resolve_evolution_configs(client_id: Optional[int] = None,
                              scopes: Sequence[str] = DEFAULT_SCOPE_ORDER) -> List[EvolutionConfig]:
    """Every usable configuration, in the requested scope order."""
    configs = []
    for scope in scopes:
        config = SCOPE_RESOLVERS[scope](client_id)
        if config:
            configs.append(config)
    return configs


def resolve_evolution_config(client_id: Optional[int] = None,
                             scopes: Sequence[str] = DEFAULT_SCOPE_ORDER) -> EvolutionConfig:
    """First usable configuration, or an empty one with scope 'none'."""
    configs = resolve_evolution_configs(client_id, scopes)
    return configs[0] if configs else EvolutionConfig()


class EvolutionClient:
    """Sends text messages through one resolved gateway configuration.

    Build it inside the app context; ``send_text`` itself only does network
    and cache I/O, so it is safe to call from worker threads.
    """

    def __init__(self, config: EvolutionConfig, client_id: Optional[int] = None,
                 timeout: Optional[float] = None, max_attempts: Optional[int] = None,
                 default_country: Optional[str] = None):
        app_config = current_app.config
        self.config = config
        self.client_id = client_id
        self.timeout = timeout or app_config.get('EVOLUTION_TIMEOUT', 10)
        self.max_attempts = max_attempts or app_config.get('EVOLUTION_MAX_ATTEMPTS', 48)
        self.default_country = default_country or app_config.get('DEFAULT_COUNTRY_CODE', '55')

    @classmethod
    def for_client(cls, client_id: Optional[int] = None,
                   scopes: Sequence[str] = DEFAULT_SCOPE_ORDER) -> 'EvolutionClient':
        return cls(resolve_evolution_config(client_id, scopes), client_id=client_id)

    @property
    def cache_key(self) -> str:
        return redis_manager.strategy_key(self.client_id, self.config.scope)

    def _ordered_strategies(self) -> List[DeliveryStrategy]:
        strategies = build_strategies(self.config)
        cached = redis_manager.get_cached_json(self.cache_key)
        if cached:
            try:
                preferred = DeliveryStrategy(**cached)
            except TypeError:
                preferred = None
            if preferred in strategies:
                strategies.remove(preferred)
                strategies.insert(0, preferred)
            else:
                redis_manager.forget(self.cache_key)
        return strategies

    def send_text(self, number: str, text: str) -> DeliveryResult:
        """Deliver one text message, probing request shapes until one is accepted."""
        if not self.config.is_configured:
            return DeliveryResult(success=False, scope=SCOPE_NONE,
                                  error='WhatsApp gateway is not configured')

        normalized = normalize_phone(number, self.default_country)
        if not normalized:
            return DeliveryResult(success=False, scope=self.config.scope,
                                  error=f'Invalid phone number: {number!r}')

        result = DeliveryResult(success=False, scope=self.config.scope)
        unreachable = set()

        for strategy in self._ordered_strategies():
            if result.attempts >= self.max_attempts:
                break
            url, headers, body = strategy.build_request(self.config, normalized, text)
            if url in unreachable:
                continue
            if url not in result.attempted_endpoints:
                result.attempted_endpoints.append(url)
            result.attempts += 1

            try:
                response = requests.post(url, headers=headers, json=body, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                # Transport failure: other headers or payloads on this URL won't help
                unreachable.add(url)
                result.error = f'{type(e).__name__}: {e}'
                logger.debug(f"[Evolution] {url} unreachable: {e}")
                continue

            if 200 <= response.status_code < 300:
                result.success = True
                result.error = None
                result.endpoint = url
                result.message_id = self._extract_message_id(response)
                redis_manager.cache_json(self.cache_key, strategy.to_dict())
                logger.info(f"[Evolution] Message sent to {normalized} via {url} "
                            f"({strategy.header_style}/{strategy.payload_shape}, scope={self.config.scope})")
                return result

            result.error = f'HTTP {response.status_code} - {response.text[:150]}'
            if response.status_code in MISSING_ROUTE_STATUSES:
                unreachable.add(url)

        logger.error(f"[Evolution] All {result.attempts} attempts failed for {normalized} "
                     f"(scope={self.config.scope}). Last error: {result.error}")
        return result

    @staticmethod
    def _extract_message_id(response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            key = data.get('key')
            if isinstance(key, dict) and key.get('id'):
                return str(key['id'])
            for name in ('messageId', 'id'):
                if data.get(name):
                    return str(data[name])
        return f'whatsapp_{int(time.time() * 1000)}'

    def test_connection(self) -> Dict[str, Any]:
        """Probe the gateway's instance and status endpoints without sending anything."""
        report = {
            'success': False,
            'scope': self.config.scope,
            'api_url': self.config.api_url,
            'instance': self.config.instance,
            'checks': [],
        }
        if not self.config.is_configured:
            report['error'] = 'WhatsApp gateway is not configured'
            return report

        headers = {'Content-Type': 'application/json'}
        headers.update(HEADER_STYLES['apikey'](self.config.token))
        for name, path in STATUS_PATHS:
            if '{instance}' in path and not self.config.instance:
                continue
            url = _join_url(self.config, path)
            check = {'name': name, 'url': url}
            try:
                response = requests.get(url, headers=headers, timeout=self.timeout)
                check['status_code'] = response.status_code
                check['ok'] = 200 <= response.status_code < 300
                check['body'] = response.text[:300]
            except requests.exceptions.RequestException as e:
                check['ok'] = False
                check['error'] = str(e)
            report['checks'].append(check)

        report['success'] = any(check['ok'] for check in report['checks'])
        return report


def send_whatsapp(client_id: Optional[int], number: str, text: str,
                  scopes: Sequence[str] = DEFAULT_SCOPE_ORDER) -> DeliveryResult:
    """Try each usable configuration in scope order until one delivers."""
    configs = resolve_evolution_configs(client_id, scopes)
    if not configs:
        return DeliveryResult(success=False, scope=SCOPE_NONE,
                              error='WhatsApp gateway is not configured')

    attempted: List[str] = []
    result = None
    for config in configs:
        result = EvolutionClient(config, client_id=client_id).send_text(number, text)
        attempted.extend(url for url in result.attempted_endpoints if url not in attempted)
        if result.success:
            break
    result.attempted_endpoints = attempted
    return result
