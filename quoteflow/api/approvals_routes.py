"""
Approval decision endpoints
"""
from flask import jsonify, request, current_app
from quoteflow.api import api_bp, acting_user_id, error_response, int_param
from quoteflow.extensions import db
from quoteflow.exceptions import QuoteFlowError, ValidationError
from quoteflow.models import ApprovalStatus
from quoteflow.services.approval_workflow import decide_approval

def _decide(approval_id, decision):
    try:
        data = request.get_json(silent=True) or {}
        approver_id = data.get('approver_id')
        approver_id = int_param(approver_id, 'approver_id') if approver_id else acting_user_id(data)
        if not approver_id:
            raise ValidationError("approver_id is required")

        result = decide_approval(approval_id, approver_id, decision, comments=data.get('comments'))
        return jsonify(result)

    except QuoteFlowError as e:
        return error_response(e)
    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Error recording {decision} for approval {approval_id}: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

@api_bp.route('/approvals/<int:approval_id>/approve', methods=['POST'])
def approve_approval(approval_id):
    """Approve a pending approval request"""
    return _decide(approval_id, ApprovalStatus.APPROVED.value)

@api_bp.route('/approvals/<int:approval_id>/reject', methods=['POST'])
def reject_approval(approval_id):
    """Reject a pending approval request"""
    return _decide(approval_id, ApprovalStatus.REJECTED.value)
