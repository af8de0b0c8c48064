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

import copy
import itertools
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from webid.api.conditions import utc_timestamp
from webid.api.models import Page, Site, SiteStatus
from webid.cluster.base import ClusterClient, PageIndex, ResourceKind
from webid.exceptions import ResourceConflictException, ResourceNotFoundException

logger = logging.getLogger(__name__)

ObjectKey = Tuple[ResourceKind, str, str]


class InMemoryCluster(ClusterClient, PageIndex):
    """
    Local object store for testing or single-process runs

    Emulates the parts of the API server the reconcilers rely on:
    resourceVersion checks, generation bumps on spec changes, status
    subresource separation and finalizer-gated deletion. Every write is
    recorded in `operations` as (verb, kind, name).
    """

    def __init__(self):
        self._objects: Dict[ObjectKey, Any] = {}
        self._versions = itertools.count(1)
        self._failures: Dict[Tuple[str, ResourceKind], List[Exception]] = defaultdict(list)
        self.operations: List[Tuple[str, ResourceKind, str]] = []

    def fail_next(self, verb: str, kind: ResourceKind, error: Exception):
        """Make the next `verb` call ("get", "create", ...) for `kind` raise `error`"""
        self._failures[(verb, kind)].append(error)

    def _maybe_fail(self, verb: str, kind: ResourceKind):
        pending = self._failures.get((verb, kind))
        if pending:
            raise pending.pop(0)

    def _record(self, verb: str, kind: ResourceKind, name: str):
        self.operations.append((verb, kind, name))

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _stored(self, kind: ResourceKind, namespace: str, name: str) -> Any:
        obj = self._objects.get((kind, namespace, name))
        if obj is None:
            raise ResourceNotFoundException(kind.value, namespace, name)
        return obj

    @staticmethod
    def _check_version(kind: ResourceKind, obj: Any, stored: Any):
        version = obj.metadata.resource_version
        if version is not None and version != stored.metadata.resource_version:
            raise ResourceConflictException(
                kind.value,
                stored.metadata.namespace,
                stored.metadata.name,
                f"resourceVersion {version} is stale (current {stored.metadata.resource_version})",
            )

    def writes(self, kind: Optional[ResourceKind] = None) -> List[Tuple[str, ResourceKind, str]]:
        """Recorded write operations, optionally limited to one kind"""
        return [op for op in self.operations if kind is None or op[1] == kind]

    def objects(self, kind: ResourceKind) -> List[Any]:
        return [copy.deepcopy(obj) for (k, _, _), obj in self._objects.items() if k == kind]

    def exists(self, kind: ResourceKind, namespace: str, name: str) -> bool:
        return (kind, namespace, name) in self._objects

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> Any:
        self._maybe_fail("get", kind)
        return copy.deepcopy(self._stored(kind, namespace, name))

    async def create(self, kind: ResourceKind, obj: Any) -> Any:
        self._maybe_fail("create", kind)
        meta = obj.metadata
        key = (kind, meta.namespace, meta.name)
        if key in self._objects:
            raise ResourceConflictException(kind.value, meta.namespace, meta.name, "already exists")

        stored = copy.deepcopy(obj)
        stored.metadata.uid = str(uuid.uuid4())
        stored.metadata.resource_version = self._next_version()
        stored.metadata.generation = 1
        stored.metadata.deletion_timestamp = None
        # status is a subresource, it is never accepted on create
        if kind == ResourceKind.SITE:
            stored.status = SiteStatus()
        elif kind == ResourceKind.PAGE:
            stored.status = {}

        self._objects[key] = stored
        self._record("create", kind, meta.name)
        logger.debug(f"Created {kind.value} {meta.namespace}/{meta.name}")
        return copy.deepcopy(stored)

    async def update(self, kind: ResourceKind, obj: Any) -> Any:
        self._maybe_fail("update", kind)
        meta = obj.metadata
        stored = self._stored(kind, meta.namespace, meta.name)
        self._check_version(kind, obj, stored)

        updated = copy.deepcopy(obj)
        updated.metadata.uid = stored.metadata.uid
        updated.metadata.deletion_timestamp = stored.metadata.deletion_timestamp
        updated.metadata.generation = stored.metadata.generation
        updated.metadata.resource_version = self._next_version()
        if kind.is_custom:
            updated.status = copy.deepcopy(stored.status)
            if updated.spec != stored.spec:
                updated.metadata.generation = (stored.metadata.generation or 0) + 1

        key = (kind, meta.namespace, meta.name)
        self._record("update", kind, meta.name)
        if updated.metadata.deletion_timestamp is not None and not updated.metadata.finalizers:
            del self._objects[key]
            logger.debug(f"Removed {kind.value} {meta.namespace}/{meta.name} after its last finalizer")
            return copy.deepcopy(updated)

        self._objects[key] = updated
        return copy.deepcopy(updated)

    async def update_status(self, kind: ResourceKind, obj: Any) -> Any:
        self._maybe_fail("update_status", kind)
        if not kind.is_custom:
            raise ValueError(f"{kind.value} has no status subresource here")
        meta = obj.metadata
        stored = self._stored(kind, meta.namespace, meta.name)
        self._check_version(kind, obj, stored)

        updated = copy.deepcopy(stored)
        updated.status = copy.deepcopy(obj.status)
        updated.metadata.resource_version = self._next_version()
        self._objects[(kind, meta.namespace, meta.name)] = updated
        self._record("update_status", kind, meta.name)
        return copy.deepcopy(updated)

    async def delete(self, kind: ResourceKind, namespace: str, name: str):
        self._maybe_fail("delete", kind)
        stored = self._stored(kind, namespace, name)
        self._record("delete", kind, name)
        if stored.metadata.finalizers:
            if stored.metadata.deletion_timestamp is None:
                stored.metadata.deletion_timestamp = utc_timestamp()
                stored.metadata.resource_version = self._next_version()
            logger.debug(f"Marked {kind.value} {namespace}/{name} for deletion")
            return
        del self._objects[(kind, namespace, name)]

    async def pages_for_site(self, namespace: str, site: str) -> List[Page]:
        self._maybe_fail("list", ResourceKind.PAGE)
        return [
            copy.deepcopy(obj)
            for (kind, ns, _), obj in self._objects.items()
            if kind == ResourceKind.PAGE and ns == namespace and obj.spec.site == site
        ]

    async def add_site(self, site: Site) -> Site:
        return await self.create(ResourceKind.SITE, site)

    async def add_page(self, page: Page) -> Page:
        return await self.create(ResourceKind.PAGE, page)
