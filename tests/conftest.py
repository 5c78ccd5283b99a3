import os
import sys
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import requests

# Ensure project root on PYTHONPATH
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from quoteflow import create_app
from quoteflow.extensions import db
from quoteflow.models import (Client, Integration, IntegrationType, Quote, QuoteItem, QuoteResponse,
                              Supplier, User)

EVOLUTION_URL = 'https://evo.example.com'
RESEND_URL = 'https://api.resend.com/emails'


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else (str(payload) if payload is not None else '')

    def json(self):
        if self._payload is None:
            raise ValueError('No JSON body')
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f'HTTP {self.status_code}')


def recipient(body):
    """Phone number from any of the gateway payload shapes"""
    for key in ('number', 'phone', 'to', 'chatId', 'recipient'):
        if key in (body or {}):
            return body[key]
    return None


def is_official_send(call):
    """The Evolution v2 contract: sendText path, apikey header, number/text body"""
    return (call.method == 'POST' and call.url.startswith(EVOLUTION_URL)
            and '/message/sendText/' in call.url and 'apikey' in call.headers
            and set(call.json or {}) == {'number', 'text'})


class FakeHTTP:
    """Stands in for requests.post/get. Handlers registered later take priority."""

    def __init__(self):
        self.calls = []
        self.handlers = []

    def on(self, predicate, handler):
        self.handlers.insert(0, (predicate, handler))

    def _dispatch(self, method, url, headers, body):
        call = SimpleNamespace(method=method, url=url, headers=headers or {}, json=body)
        self.calls.append(call)
        for predicate, handler in self.handlers:
            if predicate(call):
                result = handler(call)
                if isinstance(result, Exception):
                    raise result
                return result
        return FakeResponse(404, {'error': 'not found'})

    def post(self, url, headers=None, json=None, timeout=None, **kwargs):
        return self._dispatch('POST', url, headers, json)

    def get(self, url, headers=None, timeout=None, **kwargs):
        return self._dispatch('GET', url, headers, None)

    def posts(self, prefix=''):
        return [call for call in self.calls if call.method == 'POST' and call.url.startswith(prefix)]

    def delivered_whatsapp(self):
        return [call for call in self.calls if is_official_send(call)]

    def emails(self):
        return self.posts(RESEND_URL)


@pytest.fixture
def app():
    """Create test application"""
    app = create_app('testing')
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client"""
    return app.test_client()


@pytest.fixture
def http(app):
    """Gateway accepting the official contract, email provider accepting everything"""
    fake = FakeHTTP()
    fake.on(lambda call: call.method == 'POST' and call.url.startswith(RESEND_URL),
            lambda call: FakeResponse(200, {'id': 'email-1'}))
    fake.on(is_official_send, lambda call: FakeResponse(201, {'key': {'id': 'MSG-1'}}))
    with patch('requests.post', side_effect=fake.post), patch('requests.get', side_effect=fake.get):
        yield fake


@pytest.fixture
def llm(app):
    """Patched language model; tests set return_value or side_effect"""
    with patch('quoteflow.integrations.llm_client.LLMClient.generate') as generate:
        generate.return_value = '{}'
        yield generate


def add_integration(integration_type, configuration, client_id=None):
    integration = Integration(integration_type=integration_type, client_id=client_id, active=True)
    integration.set_configuration(configuration)
    db.session.add(integration)
    db.session.commit()
    return integration


@pytest.fixture
def channels(app):
    """Global WhatsApp gateway and email provider"""
    add_integration(IntegrationType.WHATSAPP_EVOLUTION.value,
                    {'api_url': EVOLUTION_URL, 'token': 'evo-token', 'instance': 'main'})
    add_integration(IntegrationType.EMAIL_RESEND.value,
                    {'api_key': 're_test', 'from_email': 'cotacoes@example.com', 'from_name': 'QuoteFlow'})


@pytest.fixture
def world(app):
    """A client with users, three registered suppliers and a quote with two items"""
    buyer = Client(name='Condomínio Azul', email='compras@azul.example.com')
    other = Client(name='Outro Cliente')
    db.session.add_all([buyer, other])
    db.session.flush()

    manager = User(client_id=buyer.id, email='gerente@azul.example.com', name='Gerente', role='manager')
    analyst = User(client_id=buyer.id, email='analista@azul.example.com', name='Analista')
    former = User(client_id=buyer.id, email='ex@azul.example.com', name='Ex', is_active=False)
    db.session.add_all([manager, analyst, former])

    suppliers = [
        Supplier(name='Fornecedor A', whatsapp='11911110001', email='a@forn.example.com',
                 registration_status='active'),
        Supplier(name='Fornecedor B', whatsapp='11911110002', email='b@forn.example.com',
                 registration_status='active'),
        Supplier(client_id=buyer.id, name='Fornecedor C', phone='11911110003',
                 registration_status='active'),
    ]
    foreign = Supplier(client_id=other.id, name='Fornecedor de Outro', whatsapp='11911119999',
                       registration_status='active')
    db.session.add_all(suppliers + [foreign])
    db.session.flush()

    quote = Quote(client_id=buyer.id, title='Manutenção elevadores', total=5000,
                  deadline=datetime.utcnow() + timedelta(days=7), created_by=manager.id)
    quote.items = [
        QuoteItem(product_name='Revisão mensal', quantity=12),
        QuoteItem(product_name='Troca de cabos', quantity=1),
    ]
    db.session.add(quote)
    db.session.commit()

    return SimpleNamespace(client=buyer, other_client=other, manager=manager, analyst=analyst,
                           former=former, suppliers=suppliers, foreign=foreign, quote=quote)


def add_responses(quote, suppliers, amounts, status='pending'):
    """One proposal per (supplier, amount); the quote becomes sent"""
    quote.status = 'sent'
    quote.sent_at = quote.sent_at or datetime.utcnow()
    responses = []
    for supplier, amount in zip(suppliers, amounts):
        response = QuoteResponse(quote_id=quote.id, supplier_id=supplier.id,
                                 total_amount=amount, delivery_time=10, status=status)
        db.session.add(response)
        responses.append(response)
    db.session.commit()
    return responses
