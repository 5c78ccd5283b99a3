"""
Channel integration endpoints
"""
from flask import jsonify, request, current_app
from quoteflow.api import api_bp, error_response
from quoteflow.extensions import db
from quoteflow.exceptions import QuoteFlowError, ValidationError
from quoteflow.integrations.evolution_client import EvolutionClient
from quoteflow.models import Integration, IntegrationType

@api_bp.route('/integrations', methods=['POST'])
def save_integration():
    """Create or replace a client's (or the global) channel configuration"""
    try:
        data = request.get_json(silent=True) or {}
        integration_type = data.get('integration_type')
        if integration_type not in [item.value for item in IntegrationType]:
            raise ValidationError(f"Unknown integration type: {integration_type}")
        client_id = data.get('client_id')

        integration = Integration.query.filter_by(
            integration_type=integration_type, client_id=client_id
        ).first()
        if integration is None:
            integration = Integration(integration_type=integration_type, client_id=client_id)
            db.session.add(integration)

        integration.set_configuration(data.get('configuration'))
        integration.active = bool(data.get('active', True))
        db.session.commit()

        current_app.logger.info(f"Saved {integration_type} integration for client {client_id or 'global'}")
        return jsonify({
            'success': True,
            'integration': {
                'id': integration.id,
                'integration_type': integration.integration_type,
                'client_id': integration.client_id,
                'active': integration.active,
                'configuration_keys': sorted(integration.configuration.keys()),
            }
        })

    except QuoteFlowError as e:
        db.session.rollback()
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error saving integration: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/integrations/whatsapp/test', methods=['POST'])
def test_whatsapp():
    """Probe the WhatsApp gateway resolved for a client"""
    try:
        data = request.get_json(silent=True) or {}
        client = EvolutionClient.for_client(data.get('client_id'))
        report = client.test_connection()
        return jsonify(report)

    except Exception as e:
        current_app.logger.error(f"Error testing WhatsApp connection: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
