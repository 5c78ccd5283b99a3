"""
Automated negotiation endpoints
"""
from flask import jsonify, request, current_app
from quoteflow.agents.negotiation_agent import NegotiationAgent, approve_negotiation, reject_negotiation
from quoteflow.api import api_bp, acting_user_id, error_response, int_param
from quoteflow.extensions import db
from quoteflow.exceptions import NotFoundError, QuoteFlowError, ValidationError
from quoteflow.models import Negotiation

@api_bp.route('/negotiations/analyze', methods=['POST'])
def analyze_negotiation():
    """Analyze a quote's proposals for negotiation potential"""
    try:
        data = request.get_json(silent=True) or {}
        quote_id = data.get('quote_id')
        if not quote_id:
            raise ValidationError("quote_id is required")

        result = NegotiationAgent().analyze(int_param(quote_id, 'quote_id'))
        return jsonify({'success': True, **result})

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error analyzing negotiation: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/negotiations/<int:negotiation_id>/initiate', methods=['POST'])
def initiate_negotiation(negotiation_id):
    """Send the opening negotiation message to the supplier"""
    try:
        result = NegotiationAgent().initiate(negotiation_id)
        # A reported failure is retryable and leaves state untouched
        return jsonify(result), 200 if result['success'] else 502

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error initiating negotiation {negotiation_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/negotiations/<int:negotiation_id>/approve', methods=['POST'])
def approve(negotiation_id):
    """Human override: approve"""
    try:
        data = request.get_json(silent=True) or {}
        negotiation = approve_negotiation(negotiation_id, acting_user_id(data))
        return jsonify({'success': True, 'negotiation': negotiation.to_dict()})

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error approving negotiation {negotiation_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/negotiations/<int:negotiation_id>/reject', methods=['POST'])
def reject(negotiation_id):
    """Human override: reject"""
    try:
        data = request.get_json(silent=True) or {}
        negotiation = reject_negotiation(negotiation_id, acting_user_id(data))
        return jsonify({'success': True, 'negotiation': negotiation.to_dict()})

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error rejecting negotiation {negotiation_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/negotiations/<int:negotiation_id>', methods=['GET'])
def get_negotiation(negotiation_id):
    """Negotiation with its conversation log"""
    try:
        negotiation = db.session.get(Negotiation, negotiation_id)
        if not negotiation:
            raise NotFoundError(f"Negotiation {negotiation_id} not found")
        return jsonify({'success': True, 'negotiation': negotiation.to_dict()})

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        current_app.logger.error(f"Error getting negotiation {negotiation_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
