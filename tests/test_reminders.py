"""
Tests for response status tracking and supplier reminders
"""
from datetime import datetime, timedelta

import pytest

from quoteflow.extensions import db
from quoteflow.models import AuditLog, QuoteSupplierStatus
from quoteflow.services import status_tracker
from quoteflow.services.dispatch import send_reminders
from conftest import recipient

BASE = datetime(2030, 1, 10, 12, 0)


@pytest.fixture
def sent_quote(app, world):
    """The world quote sent 72 hours before BASE to all three suppliers"""
    world.quote.status = 'sent'
    world.quote.sent_at = BASE - timedelta(hours=72)
    for supplier in world.suppliers:
        status_tracker.upsert_status(world.quote.id, supplier.id)
    db.session.commit()
    return world.quote


def _row(quote, supplier):
    return QuoteSupplierStatus.query.filter_by(quote_id=quote.id, supplier_id=supplier.id).one()


class TestStatusTracker:
    """Test the status lattice"""

    def test_never_regresses(self, app, world):
        quote, supplier = world.quote, world.suppliers[0]
        status_tracker.mark_responded(quote.id, supplier.id)
        row = status_tracker.upsert_status(quote.id, supplier.id, 'pending')

        assert row.status == 'responded'
        assert row.responded_at is not None

    def test_declined_is_terminal(self, app, world):
        quote, supplier = world.quote, world.suppliers[0]
        status_tracker.mark_declined(quote.id, supplier.id)
        row = status_tracker.mark_responded(quote.id, supplier.id)

        assert row.status == 'declined'

    def test_single_row_per_pair(self, app, world):
        for _ in range(3):
            status_tracker.upsert_status(world.quote.id, world.suppliers[0].id)
        db.session.commit()

        assert QuoteSupplierStatus.query.filter_by(quote_id=world.quote.id).count() == 1

    def test_reminder_spacing(self, app, world):
        row = status_tracker.upsert_status(world.quote.id, world.suppliers[0].id)
        assert status_tracker.is_reminder_due(row, BASE)

        status_tracker.advance_reminder(row, BASE)
        assert row.status == 'reminded_once'
        assert not status_tracker.is_reminder_due(row, BASE + timedelta(hours=23))
        assert status_tracker.is_reminder_due(row, BASE + timedelta(hours=24))

        status_tracker.advance_reminder(row, BASE + timedelta(hours=24))
        assert row.status == 'reminded_twice'
        assert not status_tracker.is_reminder_due(row, BASE + timedelta(days=30))
        assert status_tracker.reminder_count(row.status) == 2


class TestSendReminders:
    """Test send_reminders"""

    def test_at_most_two_reminders_spaced_a_day_apart(self, app, world, channels, http, sent_quote):
        first = send_reminders(now=BASE)
        assert first['reminders_sent'] == 3
        assert {_row(sent_quote, s).status for s in world.suppliers} == {'reminded_once'}

        assert send_reminders(now=BASE + timedelta(hours=1))['reminders_sent'] == 0

        second = send_reminders(now=BASE + timedelta(hours=25))
        assert second['reminders_sent'] == 3
        assert {_row(sent_quote, s).status for s in world.suppliers} == {'reminded_twice'}
        assert all(result['reminder_count'] == 2 for result in second['results'])

        assert send_reminders(now=BASE + timedelta(hours=50))['reminders_sent'] == 0
        assert len(http.delivered_whatsapp()) == 6
        assert AuditLog.query.filter_by(action='QUOTE_REMINDERS_SENT').count() == 2

    def test_reminder_text_names_the_ordinal(self, app, world, channels, http, sent_quote):
        send_reminders(now=BASE)
        send_reminders(now=BASE + timedelta(hours=24))

        texts = [call.json['text'] for call in http.delivered_whatsapp()
                 if recipient(call.json) == '5511911110001']
        assert 'primeiro lembrete' in texts[0]
        assert 'segundo lembrete' in texts[1]

    def test_answered_suppliers_are_skipped(self, app, world, channels, http, sent_quote):
        status_tracker.mark_responded(sent_quote.id, world.suppliers[0].id)
        status_tracker.mark_declined(sent_quote.id, world.suppliers[1].id)
        db.session.commit()

        result = send_reminders(now=BASE)

        assert result['reminders_sent'] == 1
        assert [call_recipient for call_recipient in
                (recipient(call.json) for call in http.delivered_whatsapp())] == ['5511911110003']

    def test_recent_quotes_are_not_reminded(self, app, world, channels, http, sent_quote):
        sent_quote.sent_at = BASE - timedelta(hours=10)
        db.session.commit()

        assert send_reminders(now=BASE)['reminders_sent'] == 0
        assert send_reminders(hours_since_sent=8, now=BASE)['reminders_sent'] == 3

    def test_email_when_supplier_has_no_phone(self, app, world, channels, http, sent_quote):
        supplier = world.suppliers[1]
        supplier.whatsapp = None
        db.session.commit()

        result = send_reminders(quote_id=sent_quote.id, now=BASE)

        email_result = next(r for r in result['results'] if r['supplier_id'] == supplier.id)
        assert email_result['channel'] == 'email'
        assert email_result['success']
        assert [call.json['to'] for call in http.emails()] == [['b@forn.example.com']]

    def test_failed_reminder_does_not_advance(self, app, world, http, sent_quote):
        # No gateway configured
        result = send_reminders(now=BASE)

        assert result['reminders_sent'] == 0
        assert {_row(sent_quote, s).status for s in world.suppliers} == {'pending'}
        assert AuditLog.query.filter_by(action='QUOTE_REMINDERS_SENT').count() == 0

    def test_only_sent_quotes(self, app, world, channels, http, sent_quote):
        sent_quote.status = 'approved'
        db.session.commit()

        assert send_reminders(now=BASE)['reminders_sent'] == 0
