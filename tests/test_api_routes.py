"""
Tests for the HTTP API, webhook endpoint and CLI
"""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from quoteflow.extensions import db
from quoteflow.models import Integration, Negotiation, QuoteSupplierStatus, QuoteToken
from quoteflow.services.links import issue_token
from conftest import FakeResponse, add_responses


class TestQuoteRoutes:
    """Dispatch, reminders and award endpoints"""

    def test_dispatch(self, client, world, channels, http):
        response = client.post(f'/api/quotes/{world.quote.id}/dispatch', json={'send_whatsapp': True})

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        assert data['sent_count'] == 3
        assert data['quote_status'] == 'sent'

    def test_dispatch_missing_quote(self, client, app):
        response = client.post('/api/quotes/999/dispatch', json={})

        assert response.status_code == 404
        assert response.get_json()['success'] is False

    def test_dispatch_closed_quote(self, client, world):
        world.quote.status = 'rejected'
        db.session.commit()

        response = client.post(f'/api/quotes/{world.quote.id}/dispatch', json={})

        assert response.status_code == 409

    def test_dispatch_without_channels(self, client, world):
        response = client.post(f'/api/quotes/{world.quote.id}/dispatch',
                               json={'send_whatsapp': False, 'send_email': False})

        assert response.status_code == 400

    def test_dispatch_bad_supplier_ids(self, client, world):
        response = client.post(f'/api/quotes/{world.quote.id}/dispatch', json={'supplier_ids': 3})

        assert response.status_code == 400

    def test_dispatch_non_numeric_user_id(self, client, world, channels, http):
        response = client.post(f'/api/quotes/{world.quote.id}/dispatch', json={'user_id': 'gerente'})

        assert response.status_code == 400
        data = response.get_json()
        assert data['error'] == 'user_id must be an integer'
        assert data['details'] == {'user_id': 'gerente'}
        assert http.calls == []

    def test_dispatch_non_numeric_supplier_id(self, client, world, channels, http):
        response = client.post(f'/api/quotes/{world.quote.id}/dispatch', json={'supplier_ids': ['A']})

        assert response.status_code == 400
        assert http.calls == []

    def test_run_reminders(self, client, world, channels, http):
        response = client.post('/api/reminders/run', json={'hours_since_sent': 1})

        assert response.status_code == 200
        assert response.get_json()['reminders_sent'] == 0

    def test_award_requires_response_id(self, client, world):
        response = client.post(f'/api/quotes/{world.quote.id}/award', json={})

        assert response.status_code == 400
        assert 'response_id' in response.get_json()['error']

    def test_award(self, client, world, channels, http):
        responses = add_responses(world.quote, world.suppliers, [1000, 1020, 1050])

        response = client.post(f'/api/quotes/{world.quote.id}/award',
                               json={'response_id': responses[0].id, 'user_id': world.manager.id})

        assert response.status_code == 200
        assert response.get_json()['quote_status'] == 'approved'


class TestSupplierResponseRoutes:
    """Proposal submission through the response link"""

    @pytest.fixture
    def token(self, app, world):
        world.quote.status = 'sent'
        token = issue_token(world.quote.id, world.suppliers[0].id)
        db.session.commit()
        return token

    def test_submit_by_short_code(self, client, world, token):
        response = client.post(f'/api/responses/{token.short_code}',
                               json={'total_amount': '1234.5', 'delivery_time': 7})

        assert response.status_code == 201
        data = response.get_json()['response']
        assert data['total_amount'] == 1234.5
        assert data['supplier_id'] == world.suppliers[0].id
        row = QuoteSupplierStatus.query.filter_by(quote_id=world.quote.id,
                                                  supplier_id=world.suppliers[0].id).one()
        assert row.status == 'responded'

    def test_resubmission_updates_the_proposal(self, client, world, token):
        client.post(f'/api/responses/{token.full_token}', json={'total_amount': 1000})
        response = client.post(f'/api/responses/{token.full_token}', json={'total_amount': 990})

        assert response.status_code == 201
        assert len(world.quote.responses) == 1
        assert world.quote.responses[0].total_amount == 990

    def test_invalid_amount(self, client, token):
        response = client.post(f'/api/responses/{token.short_code}', json={'total_amount': 'abc'})

        assert response.status_code == 400

    def test_expired_token(self, client, token):
        token.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.session.commit()

        response = client.post(f'/api/responses/{token.short_code}', json={'total_amount': 100})

        assert response.status_code == 404

    def test_quote_closed(self, client, world, token):
        world.quote.status = 'approved'
        db.session.commit()

        response = client.post(f'/api/responses/{token.short_code}', json={'total_amount': 100})

        assert response.status_code == 409

    def test_decline(self, client, world, token):
        response = client.post(f'/api/responses/{token.short_code}/decline', json={'reason': 'Sem estoque'})

        assert response.status_code == 200
        assert response.get_json()['status'] == 'declined'


class TestNegotiationRoutes:
    """Negotiation endpoints"""

    def test_analyze_requires_quote_id(self, client, app):
        response = client.post('/api/negotiations/analyze', json={})

        assert response.status_code == 400

    def test_analyze_and_get(self, client, world, llm):
        add_responses(world.quote, world.suppliers, [1000, 1100, 1300])

        response = client.post('/api/negotiations/analyze', json={'quote_id': world.quote.id})

        assert response.status_code == 200
        data = response.get_json()
        assert data['should_negotiate'] is False

        negotiation_id = data['negotiation']['id']
        response = client.get(f'/api/negotiations/{negotiation_id}')
        assert response.status_code == 200
        assert response.get_json()['negotiation']['conversation_log'] == []

    def test_initiate_failure_is_502(self, app, client, world, channels, http, llm):
        app.config['EVOLUTION_MAX_ATTEMPTS'] = 2
        http.handlers.clear()
        http.on(lambda call: True, lambda call: FakeResponse(503, text='unavailable'))
        add_responses(world.quote, world.suppliers, [1000, 1020, 1050])
        llm.return_value = '{"reason": "r", "strategy": "s", "targetDiscount": 8}'
        negotiation_id = client.post('/api/negotiations/analyze',
                                     json={'quote_id': world.quote.id}).get_json()['negotiation']['id']
        llm.return_value = 'Olá, fecharia por menos?'

        response = client.post(f'/api/negotiations/{negotiation_id}/initiate')

        assert response.status_code == 502
        assert response.get_json()['stage'] == 'delivery'
        assert db.session.get(Negotiation, negotiation_id).status == 'analyzed'

    def test_analyze_non_numeric_quote_id(self, client, app):
        response = client.post('/api/negotiations/analyze', json={'quote_id': 'abc'})

        assert response.status_code == 400

    def test_override_with_non_numeric_user_id(self, client, app):
        response = client.post('/api/negotiations/1/approve?user_id=abc')

        assert response.status_code == 400
        assert response.get_json()['error'] == 'user_id must be an integer'

    def test_get_missing(self, client, app):
        response = client.get('/api/negotiations/42')

        assert response.status_code == 404

    def test_approve(self, client, world, llm):
        add_responses(world.quote, world.suppliers, [1000, 1100, 1300])
        negotiation_id = client.post('/api/negotiations/analyze',
                                     json={'quote_id': world.quote.id}).get_json()['negotiation']['id']

        response = client.post(f'/api/negotiations/{negotiation_id}/approve',
                               json={'user_id': world.manager.id})

        assert response.status_code == 200
        assert response.get_json()['negotiation']['status'] == 'approved'


class TestApprovalRoutes:
    """Approval decision endpoints"""

    def test_requires_approver(self, client, app):
        response = client.post('/api/approvals/1/approve', json={})

        assert response.status_code == 400

    def test_non_numeric_approver(self, client, app):
        response = client.post('/api/approvals/1/approve', json={'approver_id': 'diretor'})

        assert response.status_code == 400
        assert response.get_json()['error'] == 'approver_id must be an integer'

    def test_missing_approval(self, client, app):
        response = client.post('/api/approvals/1/reject', json={'approver_id': 1})

        assert response.status_code == 404


class TestIntegrationRoutes:
    """Integration configuration endpoints"""

    def test_save_normalizes(self, client, world):
        response = client.post('/api/integrations', json={
            'integration_type': 'whatsapp_evolution',
            'client_id': world.client.id,
            'configuration': {'evolution_api_url': 'https://evo.example.com/', 'apikey': 'k'},
        })

        assert response.status_code == 200
        assert response.get_json()['integration']['configuration_keys'] == ['api_url', 'token']
        integration = Integration.query.one()
        assert integration.configuration['api_url'] == 'https://evo.example.com'

    def test_save_rejects_incomplete(self, client, world):
        response = client.post('/api/integrations', json={
            'integration_type': 'whatsapp_evolution',
            'configuration': {'url': 'https://evo.example.com'},
        })

        assert response.status_code == 400
        assert Integration.query.count() == 0

    def test_whatsapp_connection_check(self, client, channels, http):
        http.on(lambda call: call.method == 'GET' and 'connectionState' in call.url,
                lambda call: FakeResponse(200, {'state': 'open'}))

        response = client.post('/api/integrations/whatsapp/test', json={})

        data = response.get_json()
        assert data['success'] is True
        assert data['scope'] == 'global'
        assert [check['ok'] for check in data['checks']] == [False, True, False]
        assert all(call.method == 'GET' for call in http.calls)


class TestWebhookRoute:
    """Gateway webhook endpoint"""

    def _payload(self, text='oi', from_me=False):
        return {'event': 'messages.upsert',
                'data': {'key': {'remoteJid': '5511911110001@s.whatsapp.net', 'fromMe': from_me},
                         'message': {'conversation': text}}}

    def test_ignored_events_answer_200(self, client, app):
        response = client.post('/webhooks/evolution', json=self._payload(from_me=True))

        assert response.status_code == 200
        assert response.get_json() == {'status': 'ignored', 'reason': 'own_message'}

    def test_non_json_body(self, client, app):
        response = client.post('/webhooks/evolution', data='not json', content_type='text/plain')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'ignored'

    def test_secret_is_enforced(self, app, client):
        app.config['EVOLUTION_WEBHOOK_SECRET'] = 's3cret'

        assert client.post('/webhooks/evolution', json=self._payload()).status_code == 401
        assert client.post('/webhooks/evolution', json=self._payload(),
                           headers={'Authorization': 'Bearer wrong'}).status_code == 401
        response = client.post('/webhooks/evolution', json=self._payload(),
                               headers={'Authorization': 'Bearer s3cret'})
        assert response.status_code == 200
        response = client.post('/webhooks/evolution', json=self._payload(),
                               headers={'X-Webhook-Token': 's3cret'})
        assert response.status_code == 200

    def test_processing_error_still_answers_200(self, client, app):
        with patch('quoteflow.api.webhook_routes.ingest_inbound_message', side_effect=RuntimeError('db down')):
            response = client.post('/webhooks/evolution', json=self._payload())

        assert response.status_code == 200
        assert response.get_json() == {'status': 'ignored', 'reason': 'processing_error'}


class TestAppBasics:
    """Error handlers and CLI"""

    def test_unknown_route_is_json_404(self, client, app):
        response = client.get('/api/does-not-exist')

        assert response.status_code == 404
        assert response.get_json() == {'success': False, 'error': 'Not found'}

    def test_send_reminders_command(self, app, world, channels, http):
        world.quote.status = 'sent'
        world.quote.sent_at = datetime.utcnow() - timedelta(hours=72)
        db.session.add(QuoteSupplierStatus(quote_id=world.quote.id, supplier_id=world.suppliers[0].id))
        db.session.commit()

        result = app.test_cli_runner().invoke(args=['send-reminders'])

        assert result.exit_code == 0
        assert 'Reminders sent: 1' in result.output
        assert QuoteToken.query.count() == 1
