"""
Access policy for unpublished sites.

Published sites are visible to everyone. Unpublished sites are visible only
to authenticated viewers holding an active membership (any role). Any
failure while checking membership denies access.
"""

from __future__ import annotations

import asyncio
import logging

from sitegate.models import SiteRecord, Viewer, ViewerAccess
from sitegate.store.base import SiteStore
from sitegate.store.errors import DatastoreError

logger = logging.getLogger(__name__)


class AccessPolicy:
    def __init__(self, store: SiteStore, timeout_seconds: float = 0.3) -> None:
        self._store = store
        self._timeout = timeout_seconds

    async def can_view(self, site: SiteRecord, viewer: Viewer) -> bool:
        if site.is_published:
            return True
        access = await self.evaluate(site, viewer)
        return access.can_view_unpublished

    async def evaluate(self, site: SiteRecord, viewer: Viewer) -> ViewerAccess:
        denied = ViewerAccess(viewer=viewer)
        if site.is_published:
            # No membership lookup needed; role stays unknown
            return ViewerAccess(viewer=viewer, can_view_unpublished=False)
        if viewer.user_id is None:
            return denied

        try:
            membership = await asyncio.wait_for(
                self._store.find_membership(viewer.user_id, site.id), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Membership check timed out for site %s; denying", site.id)
            return denied
        except DatastoreError as exc:
            logger.warning("Membership check failed for site %s: %s; denying", site.id, exc)
            return denied

        if membership is None or not membership.is_active or membership.site_id != site.id:
            return denied

        return ViewerAccess(viewer=viewer, role=membership.role, can_view_unpublished=True)
