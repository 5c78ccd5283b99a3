"""
QuoteFlow exception hierarchy.

Services raise these; the API layer maps them to HTTP status codes through
``status_code``. Integration clients never raise transport errors directly,
they return structured results instead.
"""


class QuoteFlowError(Exception):
    """Base class for all QuoteFlow errors."""
    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'success': False, 'error': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class NotFoundError(QuoteFlowError):
    """A quote, supplier, negotiation or approval does not exist."""
    status_code = 404


class ValidationError(QuoteFlowError):
    """Request data is malformed or inconsistent."""
    status_code = 400


class InvalidStateError(QuoteFlowError):
    """The entity is not in a status that allows the operation."""
    status_code = 409


class ConfigurationError(QuoteFlowError):
    """A required integration, template or setting is missing."""
    status_code = 422


class LLMError(QuoteFlowError):
    """The language model was unreachable or returned an unusable answer."""
    status_code = 502
