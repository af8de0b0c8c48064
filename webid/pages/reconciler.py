# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import logging
from enum import Enum
from typing import Iterable, Optional

from webid.api.conditions import UP_TO_DATE, set_condition
from webid.api.models import PAGE_FINALIZER, PAGES_HASH_ANNOTATION, ConditionStatus, NamespacedName, Page, Site
from webid.cluster.base import ClusterClient, PageIndex, ResourceKind
from webid.exceptions import ResourceNotFoundException
from webid.pages.aggregate import Aggregate, AggregateCache, compute_digest

logger = logging.getLogger(__name__)

REASON_PAGE_CHANGED = "PageChanged"
MESSAGE_RECONCILING = "Reconciling"


class PagePhase(str, Enum):
    ACTIVE = "Active"
    TERMINATING = "Terminating"

    @classmethod
    def of(cls, page: Page) -> "PagePhase":
        return cls.TERMINATING if page.is_marked_for_deletion else cls.ACTIVE


def build_aggregate(pages: Iterable[Page]) -> Aggregate:
    """
    Merge pages into one aggregate keyed by display name

    Pages marked for deletion are skipped. When two pages share a display
    name the one listed last wins.
    """
    aggregate: Aggregate = {}
    owners = {}
    for page in pages:
        if page.is_marked_for_deletion:
            continue
        display_name = page.spec.name
        if display_name in owners:
            logger.warning(
                f"Pages {owners[display_name]} and {page.key} share the display name {display_name!r}, "
                f"keeping the content of {page.key}"
            )
        owners[display_name] = page.key
        aggregate[display_name] = page.content_bytes()
    return aggregate


class PageReconciler:
    """
    Keeps a Site's page aggregate in step with the Pages that reference it

    Deletion is two-phase: a TERMINATING page is first dropped from the
    aggregate (and the Site signalled), only then is its finalizer released.
    """

    def __init__(self, cluster: ClusterClient, index: PageIndex, cache: AggregateCache):
        self.cluster = cluster
        self.index = index
        self.cache = cache

    async def reconcile(self, page_key: NamespacedName):
        try:
            page = await self.cluster.get(ResourceKind.PAGE, page_key.namespace, page_key.name)
        except ResourceNotFoundException:
            logger.info(f"Page {page_key} not found, ignoring since it must have been deleted")
            return

        phase = PagePhase.of(page)
        logger.debug(f"Reconciling page {page_key} in phase {phase.value}")

        if phase == PagePhase.ACTIVE:
            page = await self._ensure_finalizer(page)

        site = await self._get_site(page, phase)
        await self.sync_site(page.site_key, site)

        if phase == PagePhase.TERMINATING:
            if site is None and not self.cache.get(page.site_key):
                # no Site and no Pages left to serve
                self.cache.forget(page.site_key)
            await self._release(page)

    async def sync_site(self, site_key: NamespacedName, site: Optional[Site] = None) -> bool:
        """
        Recompute the aggregate of one Site and signal the Site when it changed

        Args:
            site_key: Site whose pages are aggregated
            site: The Site to signal, None when it no longer exists

        Returns:
            True when the cached aggregate changed
        """
        pages = await self.index.pages_for_site(site_key.namespace, site_key.name)
        aggregate = build_aggregate(pages)

        previous = self.cache.get(site_key)
        if not self.cache.differs(previous, aggregate):
            logger.debug(f"Aggregate of site {site_key} unchanged ({len(aggregate)} pages)")
            return False

        digest = compute_digest(aggregate)
        if previous is None and site is not None and site.metadata.annotations.get(PAGES_HASH_ANNOTATION) == digest:
            # cold cache, the Site already carries this aggregate
            self.cache.set(site_key, aggregate)
            logger.debug(f"Aggregate of site {site_key} matches its annotation, cache warmed without a signal")
            return False

        self.cache.set(site_key, aggregate)
        logger.info(f"Aggregate of site {site_key} changed, now {len(aggregate)} pages")
        if site is None:
            return True

        try:
            await self._signal_site(site, digest)
        except BaseException:
            # put the old entry back so the next delivery sees the change again
            if not self.cache.compare_and_set(site_key, aggregate, previous):
                logger.debug(f"Aggregate of site {site_key} was replaced concurrently, not restoring it")
            raise
        return True

    async def _ensure_finalizer(self, page: Page) -> Page:
        if not page.metadata.add_finalizer(PAGE_FINALIZER):
            return page
        logger.info(f"Adding finalizer to page {page.key}")
        return await self.cluster.update(ResourceKind.PAGE, page)

    async def _get_site(self, page: Page, phase: PagePhase) -> Optional[Site]:
        site_key = page.site_key
        try:
            return await self.cluster.get(ResourceKind.SITE, site_key.namespace, site_key.name)
        except ResourceNotFoundException:
            if phase == PagePhase.TERMINATING:
                logger.info(f"Site {site_key} of terminating page {page.key} is gone, nothing to signal")
                return None
            raise

    async def _signal_site(self, site: Site, digest: str):
        site.metadata.annotations[PAGES_HASH_ANNOTATION] = digest
        site = await self.cluster.update(ResourceKind.SITE, site)

        site.status.conditions = set_condition(
            site.status.conditions,
            UP_TO_DATE,
            ConditionStatus.FALSE,
            REASON_PAGE_CHANGED,
            MESSAGE_RECONCILING,
            observed_generation=site.metadata.generation,
        )
        await self.cluster.update_status(ResourceKind.SITE, site)
        logger.debug(f"Signalled site {site.key} with digest {digest}")

    async def _release(self, page: Page):
        if not page.metadata.remove_finalizer(PAGE_FINALIZER):
            return
        logger.info(f"Removing finalizer from page {page.key}")
        await self.cluster.update(ResourceKind.PAGE, page)
