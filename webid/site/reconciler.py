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

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from webid.api.conditions import AVAILABLE, UP_TO_DATE, find_condition, set_condition
from webid.api.models import ConditionStatus, NamespacedName, Site
from webid.cluster.base import ClusterClient, ResourceKind
from webid.config import Config
from webid.exceptions import CorruptResourceException, ResourceNotFoundException
from webid.pages.aggregate import AggregateProvider
from webid.site.children import ChildResource, default_children

logger = logging.getLogger(__name__)

REASON_RECONCILING = "Reconciling"
REASON_PAGES_SYNCED = "PagesSynced"

MESSAGE_STARTING = "Starting reconciliation"
MESSAGE_FINISHED = "Finished reconciliation"

ConditionChange = Tuple[str, ConditionStatus, str, str]


class SiteReconciler:
    """
    Converges one Site's children toward its declared shape

    Every call starts from freshly fetched state and runs the full step
    sequence; the first failing step aborts the pass, marks the Site
    Available=False and re-raises so the caller can retry.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        config: Config,
        provider: AggregateProvider,
        children: Optional[Sequence[ChildResource]] = None,
    ):
        self.cluster = cluster
        self.config = config
        self.provider = provider
        self.children = list(children) if children is not None else default_children(config, provider)
        self._locks: Dict[NamespacedName, asyncio.Lock] = {}

    async def reconcile(self, site_key: NamespacedName) -> Optional[Site]:
        """
        Reconcile one Site

        Passes over the same Site are serialized, passes over different Sites
        run concurrently.

        Returns:
            The Site as stored after the pass, or None when it no longer exists
        """
        lock = self._locks.setdefault(site_key, asyncio.Lock())
        async with lock:
            site = await self._reconcile(site_key)
        if site is None and not lock.locked():
            self._locks.pop(site_key, None)
        return site

    async def _reconcile(self, site_key: NamespacedName) -> Optional[Site]:
        try:
            site = await self.cluster.get(ResourceKind.SITE, site_key.namespace, site_key.name)
        except ResourceNotFoundException:
            logger.info(f"Site {site_key} not found, ignoring since it must have been deleted")
            return None

        if not site.status.conditions:
            site = await self._set_conditions(
                site, [(AVAILABLE, ConditionStatus.UNKNOWN, REASON_RECONCILING, MESSAGE_STARTING)]
            )

        for child in self.children:
            await self._ensure_child(site, child)

        changes: List[ConditionChange] = [(AVAILABLE, ConditionStatus.TRUE, REASON_RECONCILING, MESSAGE_FINISHED)]
        up_to_date = find_condition(site.status.conditions, UP_TO_DATE)
        if up_to_date is not None and up_to_date.status == ConditionStatus.FALSE:
            changes.append((UP_TO_DATE, ConditionStatus.TRUE, REASON_PAGES_SYNCED, MESSAGE_FINISHED))
        site = await self._set_conditions(site, changes)

        logger.debug(f"Site {site_key} reconciled")
        return site

    async def _ensure_child(self, site: Site, child: ChildResource):
        namespace = site.metadata.namespace
        name = child.name_for(site)
        action = "fetch"
        try:
            logger.debug(f"Checking {child.label} {namespace}/{name}")
            try:
                existing = await self.cluster.get(child.kind, namespace, name)
            except ResourceNotFoundException:
                action = "create"
                logger.info(f"Creating {child.label} {namespace}/{name}")
                await self.cluster.create(child.kind, child.build(site))
                return

            if not child.differs(site, existing):
                logger.debug(f"{child.label} {namespace}/{name} is up to date")
                return

            action = "update"
            logger.info(f"Updating {child.label} {namespace}/{name}")
            try:
                patched = child.apply(site, existing)
            except CorruptResourceException:
                await self._delete_corrupt(child, namespace, name)
                raise
            await self.cluster.update(child.kind, patched)
        except Exception as e:
            await self._fail_with_status(site, f"Failed to {action} {child.label}", e)
            raise

    async def _delete_corrupt(self, child: ChildResource, namespace: str, name: str):
        logger.warning(f"Deleting corrupt {child.label} {namespace}/{name}, it will be recreated")
        try:
            await self.cluster.delete(child.kind, namespace, name)
        except Exception as e:
            logger.error(f"Failed to delete {child.label} {namespace}/{name}: {e}")

    async def _fail_with_status(self, site: Site, message: str, error: Exception):
        logger.error(f"{message} for site {site.key}: {error}")
        try:
            await self._set_conditions(site, [(AVAILABLE, ConditionStatus.FALSE, REASON_RECONCILING, message)])
        except Exception as e:
            # the original error is what the caller needs to see
            logger.error(f"Failed to set status of site {site.key}: {e}", exc_info=True)

    async def _set_conditions(self, site: Site, changes: List[ConditionChange]) -> Site:
        """Persist condition changes through the status subresource and return the re-fetched Site"""
        conditions = site.status.conditions
        for condition_type, status, reason, message in changes:
            conditions = set_condition(
                conditions,
                condition_type,
                status,
                reason,
                message,
                observed_generation=site.metadata.generation,
            )
        site.status.conditions = conditions
        await self.cluster.update_status(ResourceKind.SITE, site)
        return await self.cluster.get(ResourceKind.SITE, site.metadata.namespace, site.metadata.name)
