"""Tests for the per-client session context."""

import pytest

from dmchat.core.session import NotAuthenticated, SessionContext
from dmchat.models.chat import Identity


def test_empty_session():
    ctx = SessionContext()
    assert not ctx.is_authenticated
    assert ctx.account_id is None
    with pytest.raises(NotAuthenticated):
        ctx.require_account()


def test_populate_derives_account():
    ctx = SessionContext()
    ctx.populate(Identity(account_id="acct-1", email="x@example.com"))

    assert ctx.is_authenticated
    assert ctx.require_account().display_name == "Unknown"
    assert ctx.identity.email == "x@example.com"


def test_populate_refuses_second_account_until_cleared():
    ctx = SessionContext()
    ctx.populate(Identity(account_id="acct-1"))

    with pytest.raises(RuntimeError):
        ctx.populate(Identity(account_id="acct-2"))

    ctx.clear()
    ctx.populate(Identity(account_id="acct-2"))
    assert ctx.account_id == "acct-2"


def test_repopulate_same_account_refreshes_profile():
    ctx = SessionContext()
    ctx.populate(Identity(account_id="acct-1", display_name="Old"))
    ctx.populate(Identity(account_id="acct-1", display_name="New"))
    assert ctx.account.display_name == "New"
