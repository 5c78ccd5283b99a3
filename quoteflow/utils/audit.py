"""
Audit trail helpers
"""
import logging
from typing import Any, Dict, Optional
from quoteflow.extensions import db
from quoteflow.models import AuditLog

logger = logging.getLogger(__name__)

def record_audit(action: str, object_type: str, object_id: Optional[int] = None,
                 client_id: Optional[int] = None, actor_type: str = 'system',
                 actor_id: Any = 'system', details: Optional[Dict[str, Any]] = None,
                 result: str = 'success', severity: str = 'info',
                 error_message: Optional[str] = None,
                 user_id: Optional[int] = None) -> AuditLog:
    """Add an audit entry to the current session; the caller commits."""
    audit = AuditLog(
        client_id=client_id,
        actor_type=actor_type,
        actor_id=str(actor_id),
        user_id=user_id,
        action=action,
        object_type=object_type,
        object_id=object_id,
        details=details or {},
        result=result,
        severity=severity,
        error_message=error_message
    )
    db.session.add(audit)

    log = logger.warning if severity in ('warning', 'critical') else logger.info
    log(f"Audit {action} on {object_type}:{object_id} ({result})")
    return audit
