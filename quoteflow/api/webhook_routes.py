"""
Inbound webhooks from the messaging gateway
"""
import hmac
from flask import Blueprint, jsonify, request, current_app
from quoteflow.extensions import db
from quoteflow.services.webhook_ingestion import ingest_inbound_message

webhooks_bp = Blueprint('webhooks', __name__)

def _authorized() -> bool:
    secret = current_app.config.get('EVOLUTION_WEBHOOK_SECRET')
    if not secret:
        return True
    provided = request.headers.get('Authorization') or request.headers.get('X-Webhook-Token') or ''
    if provided.lower().startswith('bearer '):
        provided = provided[7:]
    return hmac.compare_digest(provided.strip().encode(), secret.encode())

@webhooks_bp.route('/evolution', methods=['POST'])
def evolution_webhook():
    """Receive a message event; always answers 200 so the gateway does not retry"""
    if not _authorized():
        return jsonify({'error': 'Unauthorized'}), 401

    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({'status': 'ignored', 'reason': 'invalid_payload'})

    try:
        return jsonify(ingest_inbound_message(payload))
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error processing inbound message: {e}")
        return jsonify({'status': 'ignored', 'reason': 'processing_error'})
