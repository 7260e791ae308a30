"""Tests for AccessPolicy — who may see an unpublished site."""

from __future__ import annotations

import asyncio

import pytest

from sitegate.models import Membership, MembershipRole, Viewer
from sitegate.store import DatastoreError, InMemorySiteStore
from sitegate.tenancy.access import AccessPolicy
from tests.helpers import make_membership, make_site, make_user

UNPUBLISHED = make_site(is_published=False)
OWNER = Viewer(user=make_user())
ANONYMOUS = Viewer()


class HangingStore(InMemorySiteStore):
    async def find_membership(self, user_id: str, site_id: str) -> Membership | None:
        await asyncio.sleep(1)
        return None


class TestCanView:
    async def test_published_site_is_visible_to_anyone(self):
        store = InMemorySiteStore()
        store.fail_with = DatastoreError("must not be called")

        assert await AccessPolicy(store).can_view(make_site(), ANONYMOUS) is True

    async def test_anonymous_viewer_is_denied(self):
        policy = AccessPolicy(InMemorySiteStore(memberships=[make_membership()]))
        assert await policy.can_view(UNPUBLISHED, ANONYMOUS) is False

    async def test_no_membership_is_denied(self):
        policy = AccessPolicy(InMemorySiteStore())
        assert await policy.can_view(UNPUBLISHED, OWNER) is False

    async def test_active_owner_is_allowed(self):
        policy = AccessPolicy(InMemorySiteStore(memberships=[make_membership()]))
        assert await policy.can_view(UNPUBLISHED, OWNER) is True

    async def test_inactive_owner_is_denied(self):
        store = InMemorySiteStore(memberships=[make_membership(is_active=False)])
        assert await AccessPolicy(store).can_view(UNPUBLISHED, OWNER) is False

    @pytest.mark.parametrize("role", list(MembershipRole))
    async def test_any_active_role_is_allowed(self, role):
        store = InMemorySiteStore(memberships=[make_membership(role=role)])
        access = await AccessPolicy(store).evaluate(UNPUBLISHED, OWNER)

        assert access.can_view_unpublished is True
        assert access.role == role

    async def test_membership_of_another_site_is_denied(self):
        store = InMemorySiteStore(memberships=[make_membership(site_id="site-2")])
        assert await AccessPolicy(store).can_view(UNPUBLISHED, OWNER) is False


class TestFailClosed:
    async def test_datastore_error_denies(self):
        store = InMemorySiteStore(memberships=[make_membership()])
        store.fail_with = DatastoreError("boom")

        assert await AccessPolicy(store).can_view(UNPUBLISHED, OWNER) is False

    async def test_timeout_denies(self):
        policy = AccessPolicy(HangingStore(), timeout_seconds=0.01)
        assert await policy.can_view(UNPUBLISHED, OWNER) is False
