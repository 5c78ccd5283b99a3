"""
Tests for supplier response tokens and links
"""
from datetime import datetime, timedelta

from quoteflow.extensions import db
from quoteflow.models import QuoteToken
from quoteflow.services.links import find_token, issue_token, proposal_link, registration_link


class TestIssueToken:
    """Test token creation, reuse and rotation"""

    def test_first_token_for_a_pair(self, app, world):
        token = issue_token(world.quote.id, world.suppliers[0].id)
        db.session.commit()

        stored = QuoteToken.query.filter_by(quote_id=world.quote.id, supplier_id=world.suppliers[0].id).one()
        assert stored.id == token.id
        assert len(stored.short_code) == 8
        assert stored.full_token
        assert stored.expires_at > datetime.utcnow() + timedelta(days=29)

    def test_tokens_for_several_suppliers(self, app, world):
        tokens = [issue_token(world.quote.id, supplier.id) for supplier in world.suppliers]
        db.session.commit()

        assert QuoteToken.query.count() == 3
        assert len({token.short_code for token in tokens}) == 3

    def test_valid_token_is_reused(self, app, world):
        first = issue_token(world.quote.id, world.suppliers[0].id)
        db.session.commit()

        again = issue_token(world.quote.id, world.suppliers[0].id)

        assert again.id == first.id
        assert again.short_code == first.short_code

    def test_expired_token_is_rotated(self, app, world):
        token = issue_token(world.quote.id, world.suppliers[0].id)
        old_code, old_token = token.short_code, token.full_token
        db.session.commit()

        later = datetime.utcnow() + timedelta(days=31)
        rotated = issue_token(world.quote.id, world.suppliers[0].id, now=later)
        db.session.commit()

        assert rotated.id == token.id
        assert rotated.short_code != old_code
        assert rotated.full_token != old_token
        assert rotated.expires_at > later
        assert QuoteToken.query.count() == 1


class TestFindToken:
    """Test token lookup"""

    def test_by_full_token_or_short_code(self, app, world):
        token = issue_token(world.quote.id, world.suppliers[0].id)
        db.session.commit()

        assert find_token(token.full_token).id == token.id
        assert find_token(token.short_code).id == token.id
        assert find_token('nope') is None

    def test_expired_token_is_not_found(self, app, world):
        token = issue_token(world.quote.id, world.suppliers[0].id)
        db.session.commit()

        assert find_token(token.short_code, now=datetime.utcnow() + timedelta(days=31)) is None


class TestLinks:
    """Test short and full links"""

    def test_short_links(self, app, world):
        token = issue_token(world.quote.id, world.suppliers[0].id)

        assert proposal_link(token) == f'https://app.example.com/s/{token.short_code}'

    def test_full_links(self, app, world):
        app.config['SHORT_LINKS_ENABLED'] = False
        token = issue_token(world.quote.id, world.suppliers[0].id)

        assert proposal_link(token) == f'https://app.example.com/supplier/quick-response/{token.full_token}'
        assert registration_link(token) == f'https://app.example.com/supplier/register/{token.full_token}'
