"""
API Blueprint - RESTful endpoints
"""
from flask import Blueprint, jsonify, request
from flask_login import current_user
from quoteflow.exceptions import QuoteFlowError, ValidationError

api_bp = Blueprint('api', __name__)

def error_response(error: QuoteFlowError):
    """JSON body and status for a domain error."""
    return jsonify(error.to_dict()), error.status_code

def int_param(value, name):
    """Integer request parameter; anything else is a 400."""
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", **{name: value})

def acting_user_id(data=None):
    """Logged-in user, else the ``user_id`` sent with the request."""
    if current_user and current_user.is_authenticated:
        return current_user.id
    value = (data or {}).get('user_id') or request.args.get('user_id')
    return int_param(value, 'user_id') if value else None

# Import all route modules to register them
from quoteflow.api import quotes_routes
from quoteflow.api import negotiation_routes
from quoteflow.api import approvals_routes
from quoteflow.api import integration_routes
