"""
Per (quote, supplier) response status tracking.

Statuses form a small lattice: pending < reminded_once < reminded_twice <
{responded, declined}. Writes go through ``upsert_status`` and never move a
row to a lower rank.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from quoteflow.extensions import db
from quoteflow.models import QuoteSupplierStatus, SupplierStatus

logger = logging.getLogger(__name__)

STATUS_RANK = {
    SupplierStatus.PENDING.value: 0,
    SupplierStatus.REMINDED_ONCE.value: 1,
    SupplierStatus.REMINDED_TWICE.value: 2,
    SupplierStatus.RESPONDED.value: 3,
    SupplierStatus.DECLINED.value: 3,
}

TERMINAL_STATUSES = (SupplierStatus.RESPONDED.value, SupplierStatus.DECLINED.value)
REMINDABLE_STATUSES = (SupplierStatus.PENDING.value, SupplierStatus.REMINDED_ONCE.value)

NEXT_REMINDER_STATUS = {
    SupplierStatus.PENDING.value: SupplierStatus.REMINDED_ONCE.value,
    SupplierStatus.REMINDED_ONCE.value: SupplierStatus.REMINDED_TWICE.value,
}

def reminder_count(status: str) -> int:
    return min(STATUS_RANK.get(status, 0), 2)

def upsert_status(quote_id: int, supplier_id: int, status: str = SupplierStatus.PENDING.value,
                  now: Optional[datetime] = None) -> QuoteSupplierStatus:
    """Create or advance the status row for (quote, supplier); never regresses."""
    row = QuoteSupplierStatus.query.filter_by(quote_id=quote_id, supplier_id=supplier_id).first()
    if row is None:
        row = QuoteSupplierStatus(quote_id=quote_id, supplier_id=supplier_id, status=status)
        db.session.add(row)
    elif row.status in TERMINAL_STATUSES:
        return row
    elif STATUS_RANK[status] > STATUS_RANK.get(row.status, 0):
        row.status = status

    if status in TERMINAL_STATUSES and row.status == status:
        row.responded_at = now or datetime.utcnow()
    db.session.flush()
    return row

def is_reminder_due(row: QuoteSupplierStatus, now: Optional[datetime] = None,
                    min_interval_hours: int = 24) -> bool:
    """At most two reminders, spaced at least ``min_interval_hours`` apart."""
    if row.status not in REMINDABLE_STATUSES:
        return False
    if row.last_reminder_sent_at is None:
        return True
    now = now or datetime.utcnow()
    return now - row.last_reminder_sent_at >= timedelta(hours=min_interval_hours)

def advance_reminder(row: QuoteSupplierStatus, now: Optional[datetime] = None) -> QuoteSupplierStatus:
    next_status = NEXT_REMINDER_STATUS.get(row.status)
    if next_status is None:
        return row
    row.status = next_status
    row.last_reminder_sent_at = now or datetime.utcnow()
    return row

def mark_responded(quote_id: int, supplier_id: int, now: Optional[datetime] = None) -> QuoteSupplierStatus:
    return upsert_status(quote_id, supplier_id, SupplierStatus.RESPONDED.value, now=now)

def mark_declined(quote_id: int, supplier_id: int, now: Optional[datetime] = None) -> QuoteSupplierStatus:
    return upsert_status(quote_id, supplier_id, SupplierStatus.DECLINED.value, now=now)
