"""
Tests for award selection and the approval workflow
"""
import pytest

from quoteflow.exceptions import InvalidStateError, NotFoundError, ValidationError
from quoteflow.extensions import db
from quoteflow.models import (Approval, ApprovalLevel, AuditLog, Negotiation, Notification,
                              QuoteResponse, SystemSetting)
from quoteflow.services.approval_workflow import (decide_approval, get_setting,
                                                  select_proposal_for_award)
from conftest import add_responses, recipient


def add_level(world, threshold, approvers, name='Nível'):
    level = ApprovalLevel(client_id=world.client.id, name=name, amount_threshold=threshold,
                          approvers=approvers, active=True)
    db.session.add(level)
    db.session.commit()
    return level


@pytest.fixture
def responses(app, world):
    return add_responses(world.quote, world.suppliers, [1000, 1020, 1050])


class TestAwardWithoutApproval:
    """No applicable approval level"""

    def test_award_is_final(self, app, world, channels, http, responses):
        result = select_proposal_for_award(responses[0].id, world.quote.id, actor_id=world.manager.id)

        assert result['approval_required'] is False
        assert result['quote_status'] == 'approved'
        assert result['approved_amount'] == 1000
        assert world.quote.supplier_id == world.suppliers[0].id
        assert [r.status for r in world.quote.responses] == ['approved', 'rejected', 'rejected']
        assert AuditLog.query.filter_by(action='PROPOSAL_APPROVED').count() == 1

    def test_suppliers_are_told(self, app, world, channels, http, responses):
        result = select_proposal_for_award(responses[0].id, world.quote.id)

        variants = {n['supplier_id']: n['variant'] for n in result['supplier_notifications']}
        assert variants == {world.suppliers[0].id: 'proposal_approved',
                            world.suppliers[1].id: 'proposal_rejected',
                            world.suppliers[2].id: 'proposal_rejected'}
        assert len(http.delivered_whatsapp()) == 3
        assert sorted(call.json['to'][0] for call in http.emails()) == ['a@forn.example.com',
                                                                         'b@forn.example.com']
        winner_text = next(call.json['text'] for call in http.delivered_whatsapp()
                           if recipient(call.json) == '5511911110001')
        assert 'R$ 1.000,00' in winner_text

    def test_rejected_suppliers_not_told_when_disabled(self, app, world, channels, http, responses):
        db.session.add(SystemSetting(client_id=None, setting_key='notify_rejected_suppliers',
                                     setting_value=False))
        db.session.commit()

        result = select_proposal_for_award(responses[0].id, world.quote.id)

        assert [n['supplier_id'] for n in result['supplier_notifications']] == [world.suppliers[0].id]

    def test_tenant_setting_overrides_global(self, app, world):
        db.session.add_all([
            SystemSetting(client_id=None, setting_key='notify_rejected_suppliers', setting_value=False),
            SystemSetting(client_id=world.client.id, setting_key='notify_rejected_suppliers',
                          setting_value=True),
        ])
        db.session.commit()

        assert get_setting(world.client.id, 'notify_rejected_suppliers') is True
        assert get_setting(world.other_client.id, 'notify_rejected_suppliers') is False
        assert get_setting(world.client.id, 'missing', 'default') == 'default'

    def test_notification_failure_does_not_undo_award(self, app, world, http, responses):
        # No channels configured at all
        result = select_proposal_for_award(responses[0].id, world.quote.id)

        assert result['quote_status'] == 'approved'
        assert not any(n['success'] for n in result['supplier_notifications'])

    def test_invalid_requests(self, app, world, responses):
        with pytest.raises(NotFoundError):
            select_proposal_for_award(999, world.quote.id)

        world.quote.status = 'draft'
        db.session.commit()
        with pytest.raises(InvalidStateError):
            select_proposal_for_award(responses[0].id, world.quote.id)


class TestAwardWithApproval:
    """An approval level applies"""

    def test_approvers_are_asked(self, app, world, http, responses):
        add_level(world, 500, [world.manager.id, world.analyst.id])

        result = select_proposal_for_award(responses[0].id, world.quote.id, comments='Melhor prazo')

        assert result['approval_required'] is True
        assert result['auto_approved'] is False
        assert result['approvers_notified'] == 2
        assert world.quote.status == 'pending_approval'
        assert db.session.get(QuoteResponse, responses[0].id).status == 'selected'
        assert Approval.query.filter_by(status='pending').count() == 2
        notifications = Notification.query.filter_by(notification_type='approval_request').all()
        assert {n.user_id for n in notifications} == {world.manager.id, world.analyst.id}
        assert 'Melhor prazo' in notifications[0].message
        assert http.calls == []

    def test_highest_threshold_not_above_amount(self, app, world, http, responses):
        add_level(world, 0, [world.analyst.id], 'Básico')
        add_level(world, 900, [world.manager.id], 'Gerência')
        add_level(world, 5000, [world.analyst.id], 'Diretoria')

        result = select_proposal_for_award(responses[0].id, world.quote.id)

        assert result['approval_level'] == 'Gerência'
        assert [a.approver_id for a in Approval.query.all()] == [world.manager.id]

    def test_no_valid_approvers_auto_approves(self, app, world, channels, http, responses):
        add_level(world, 0, [world.former.id, 9999])

        result = select_proposal_for_award(responses[0].id, world.quote.id)

        assert result['auto_approved'] is True
        assert 'no active approvers' in result['warning']
        assert result['quote_status'] == 'approved'
        audit = AuditLog.query.filter_by(action='AUTO_APPROVED_NO_APPROVERS').one()
        assert audit.severity == 'critical'
        assert Approval.query.count() == 0

    def test_inactive_level_is_ignored(self, app, world, channels, http, responses):
        level = add_level(world, 0, [world.manager.id])
        level.active = False
        db.session.commit()

        result = select_proposal_for_award(responses[0].id, world.quote.id)

        assert result['approval_required'] is False


class TestDecideApproval:
    """Test decide_approval"""

    @pytest.fixture
    def pending(self, app, world, responses):
        add_level(world, 0, [world.manager.id, world.analyst.id])
        result = select_proposal_for_award(responses[0].id, world.quote.id)
        return [db.session.get(Approval, approval_id) for approval_id in result['approval_ids']]

    def test_first_approval_finalizes(self, app, world, channels, http, pending):
        result = decide_approval(pending[0].id, world.manager.id, 'approved', comments='ok')

        assert result['quote_status'] == 'approved'
        assert result['approval_id'] == pending[0].id
        assert world.quote.supplier_id == world.suppliers[0].id
        assert {a.status for a in Approval.query.all()} == {'approved'}
        assert len(http.delivered_whatsapp()) == 3

    def test_rejection(self, app, world, http, pending):
        result = decide_approval(pending[1].id, world.analyst.id, 'rejected')

        assert result['quote_status'] == 'rejected'
        assert db.session.get(QuoteResponse, pending[1].quote_response_id).status == 'rejected'
        assert AuditLog.query.filter_by(action='PROPOSAL_REJECTED').count() == 1
        assert http.calls == []

    def test_only_the_assigned_approver(self, app, world, pending):
        with pytest.raises(ValidationError):
            decide_approval(pending[0].id, world.analyst.id, 'approved')

    def test_decision_is_final(self, app, world, channels, http, pending):
        decide_approval(pending[0].id, world.manager.id, 'approved')

        with pytest.raises(InvalidStateError):
            decide_approval(pending[1].id, world.analyst.id, 'rejected')

    def test_unknown_decision(self, app, world, pending):
        with pytest.raises(ValidationError):
            decide_approval(pending[0].id, world.manager.id, 'maybe')


class TestNegotiatedAward:
    """Awarding a proposal whose negotiation reached agreement"""

    @pytest.fixture
    def agreed(self, app, world, responses):
        negotiation = Negotiation(quote_id=world.quote.id, supplier_id=world.suppliers[0].id,
                                  selected_response_id=responses[0].id, original_amount=1000,
                                  negotiated_amount=950, discount_percentage=5, status='pending_approval')
        world.quote.status = 'awaiting_ai_approval'
        db.session.add(negotiation)
        db.session.commit()
        return negotiation

    def test_negotiated_amount_is_awarded(self, app, world, channels, http, responses, agreed):
        add_level(world, 960, [world.manager.id])

        result = select_proposal_for_award(responses[0].id, world.quote.id)

        # 950 is below the level threshold, so no approval is needed
        assert result['approval_required'] is False
        assert result['approved_amount'] == 950
        negotiation = db.session.get(Negotiation, agreed.id)
        assert negotiation.status == 'approved'
        assert negotiation.human_approved is True

    def test_negotiation_follows_the_approval(self, app, world, channels, http, responses, agreed):
        add_level(world, 0, [world.manager.id])

        result = select_proposal_for_award(responses[0].id, world.quote.id)
        assert db.session.get(Negotiation, agreed.id).status == 'awaiting_approval'
        assert result['approved_amount'] == 950

        decide_approval(result['approval_ids'][0], world.manager.id, 'approved')

        negotiation = db.session.get(Negotiation, agreed.id)
        assert negotiation.status == 'approved'
        assert negotiation.approved_by_id == world.manager.id
