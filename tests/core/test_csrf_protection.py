# tests/core/test_csrf_protection.py
"""
Unit tests for CSRFTokenStore: single use, TTL, replacement and binding
to the logical session across identifier rotation.
"""

import re
import pytest


@pytest.fixture
async def session(session_manager):
    handle = await session_manager.ensure(None)
    return handle.session


class TestCSRFTokens:
    """Test the Unissued -> Live -> Consumed | Expired lifecycle"""

    async def test_issue_format(self, csrf_store, session):
        """Test tokens are 256 bits of hex"""
        token = await csrf_store.issue(session)

        assert re.fullmatch(r"[0-9a-f]{64}", token)

    async def test_tokens_are_unique(self, csrf_store, session):
        """Test that issuing twice never repeats a token"""
        tokens = {await csrf_store.issue(session) for _ in range(20)}
        assert len(tokens) == 20

    async def test_single_use(self, csrf_store, session):
        """Test the first validation succeeds and every later one fails"""
        token = await csrf_store.issue(session)

        assert await csrf_store.validate(session, token) is True
        assert await csrf_store.validate(session, token) is False
        assert await csrf_store.validate(session, token) is False

    async def test_reissue_after_consume(self, csrf_store, session):
        """Test issue T, validate T, validate T again, issue T2, validate T2"""
        token = await csrf_store.issue(session)
        assert await csrf_store.validate(session, token)
        assert not await csrf_store.validate(session, token)

        second = await csrf_store.issue(session)
        assert second != token
        assert await csrf_store.validate(session, second)

    async def test_unissued(self, csrf_store, session):
        """Test validation without any issued token"""
        assert await csrf_store.validate(session, "0" * 64) is False

    @pytest.mark.parametrize("bad", [None, "", "not-the-token", "ü" * 64])
    async def test_wrong_token_keeps_live_token(self, csrf_store, session, bad):
        """Test a mismatch is rejected and does not burn the live token"""
        token = await csrf_store.issue(session)

        assert await csrf_store.validate(session, bad) is False
        assert await csrf_store.validate(session, token) is True

    async def test_new_issue_replaces_previous(self, csrf_store, session):
        """Test that only the most recent token is live"""
        first = await csrf_store.issue(session)
        second = await csrf_store.issue(session)

        assert not await csrf_store.validate(session, first)
        assert await csrf_store.validate(session, second)

    async def test_expired_token(self, csrf_store, session, clock):
        """Test a token validated after the TTL always fails"""
        token = await csrf_store.issue(session)

        clock.advance(3601)
        assert await csrf_store.validate(session, token) is False

        # Expired is terminal
        clock.current -= 3601
        assert await csrf_store.validate(session, token) is False

    async def test_token_valid_at_ttl_boundary(self, csrf_store, session, clock):
        """Test expiry needs strictly more than the TTL"""
        token = await csrf_store.issue(session)

        clock.advance(3600)
        assert await csrf_store.validate(session, token) is True

    async def test_tokens_bound_to_session(self, csrf_store, session_manager):
        """Test one session's token is useless for another"""
        alice = (await session_manager.ensure(None)).session
        bob = (await session_manager.ensure(None)).session
        token = await csrf_store.issue(alice)

        assert not await csrf_store.validate(bob, token)
        assert await csrf_store.validate(alice, token)

    async def test_token_survives_rotation(self, csrf_store, session_manager, clock):
        """Test rotating the session id does not orphan the live token"""
        handle = await session_manager.ensure(None)
        token = await csrf_store.issue(handle.session)

        clock.advance(1801)
        handle = await session_manager.ensure(handle.session_id)
        assert handle.rotated

        assert await csrf_store.validate(handle.session, token)


class TestCSRFHelpers:
    """Test peek, revoke and purge"""

    async def test_peek_does_not_consume(self, csrf_store, session):
        token = await csrf_store.issue(session)

        assert await csrf_store.peek(session) == token
        assert await csrf_store.peek(session) == token
        assert await csrf_store.validate(session, token)
        assert await csrf_store.peek(session) is None

    async def test_peek_expired(self, csrf_store, session, clock):
        await csrf_store.issue(session)
        clock.advance(3601)

        assert await csrf_store.peek(session) is None

    async def test_revoke(self, csrf_store, session):
        token = await csrf_store.issue(session)
        await csrf_store.revoke(session)

        assert not await csrf_store.validate(session, token)

    async def test_purge_expired(self, csrf_store, session_manager, clock):
        old = (await session_manager.ensure(None)).session
        await csrf_store.issue(old)
        clock.advance(3000)
        young = (await session_manager.ensure(None)).session
        young_token = await csrf_store.issue(young)
        clock.advance(601)

        assert await csrf_store.purge_expired() == 1
        assert await csrf_store.validate(young, young_token)

    async def test_metrics(self, csrf_store, session):
        token = await csrf_store.issue(session)
        await csrf_store.validate(session, "wrong")
        await csrf_store.validate(session, token)

        assert csrf_store.get_metrics() == {"issued": 1, "validation_failures": 1}
