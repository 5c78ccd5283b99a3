"""
Quote dispatch, reminders, supplier answers and award
"""
from flask import jsonify, request, current_app
from quoteflow.api import api_bp, acting_user_id, error_response, int_param
from quoteflow.extensions import db
from quoteflow.exceptions import QuoteFlowError, ValidationError
from quoteflow.services.approval_workflow import select_proposal_for_award
from quoteflow.services.dispatch import dispatch_quote, send_reminders
from quoteflow.services.proposals import decline_quote, submit_proposal

@api_bp.route('/quotes/<int:quote_id>/dispatch', methods=['POST'])
def dispatch(quote_id):
    """Send a quote to suppliers over WhatsApp and/or email"""
    try:
        data = request.get_json(silent=True) or {}
        supplier_ids = data.get('supplier_ids')
        if supplier_ids is not None and not isinstance(supplier_ids, list):
            raise ValidationError("supplier_ids must be a list")

        result = dispatch_quote(
            quote_id,
            supplier_ids=[int_param(supplier_id, 'supplier_ids') for supplier_id in supplier_ids] if supplier_ids else None,
            send_chat=bool(data.get('send_whatsapp', True)),
            send_email=bool(data.get('send_email', False)),
            custom_message=data.get('custom_message'),
            actor_id=acting_user_id(data)
        )
        return jsonify(result)

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error dispatching quote {quote_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/reminders/run', methods=['POST'])
def run_reminders():
    """Send due reminders; meant to be called by an external scheduler"""
    try:
        data = request.get_json(silent=True) or {}
        result = send_reminders(
            hours_since_sent=data.get('hours_since_sent'),
            quote_id=data.get('quote_id')
        )
        return jsonify(result)

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error sending reminders: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/responses/<token>', methods=['POST'])
def submit_response(token):
    """Supplier submits a proposal through their response link"""
    try:
        data = request.get_json(silent=True) or {}
        response = submit_proposal(
            token,
            data.get('total_amount'),
            delivery_time=data.get('delivery_time'),
            payment_terms=data.get('payment_terms'),
            notes=data.get('notes')
        )
        return jsonify({
            'success': True,
            'response': {
                'id': response.id,
                'quote_id': response.quote_id,
                'supplier_id': response.supplier_id,
                'total_amount': response.total_amount,
                'delivery_time': response.delivery_time,
                'status': response.status,
            }
        }), 201

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error submitting proposal: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/responses/<token>/decline', methods=['POST'])
def decline_response(token):
    """Supplier declines to quote"""
    try:
        data = request.get_json(silent=True) or {}
        row = decline_quote(token, reason=data.get('reason'))
        return jsonify({'success': True, 'quote_id': row.quote_id, 'status': row.status})

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error declining quote: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/quotes/<int:quote_id>/award', methods=['POST'])
def award(quote_id):
    """Select a proposal for award, subject to the approval levels"""
    try:
        data = request.get_json(silent=True) or {}
        response_id = data.get('response_id')
        if not response_id:
            raise ValidationError("response_id is required")

        result = select_proposal_for_award(
            int_param(response_id, 'response_id'), quote_id,
            comments=data.get('comments'),
            actor_id=acting_user_id(data)
        )
        return jsonify(result)

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error awarding quote {quote_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500
