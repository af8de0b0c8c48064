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

"""
Page aggregates

An aggregate is the merged content of every Page that references one Site,
keyed by the page display name. The AggregateCache is the only state shared
between the page and site reconcilers.
"""

import base64
import hashlib
import threading
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from webid.api.models import NamespacedName

Aggregate = Dict[str, bytes]


def aggregates_differ(old: Optional[Mapping[str, bytes]], new: Optional[Mapping[str, bytes]]) -> bool:
    """
    Compare two aggregates

    A missing aggregate is not the same as an empty one: None vs {} differs.
    """
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    if len(old) != len(new):
        return True
    for key, value in old.items():
        if key not in new:
            return True
        if bytes(new[key]) != bytes(value):
            return True
    return False


def compute_digest(aggregate: Mapping[str, bytes]) -> str:
    """SHA-1 over the keys in sorted order, each followed by its content, base64 encoded"""
    digest = hashlib.sha1()
    for key in sorted(aggregate):
        digest.update(key.encode("utf-8"))
        digest.update(aggregate[key])
    return base64.b64encode(digest.digest()).decode("ascii")


class AggregateProvider(ABC):
    """Read side of the aggregate store, as seen by the site reconciler"""

    @abstractmethod
    def get(self, site_key: NamespacedName) -> Optional[Aggregate]:
        pass

    @abstractmethod
    def differs(self, old: Optional[Mapping[str, bytes]], new: Optional[Mapping[str, bytes]]) -> bool:
        pass


class AggregateCache(AggregateProvider):
    """
    Thread-safe store of page aggregates keyed by Site identity

    The lock only guards the dictionary access; callers must never hold it
    (or expect it held) across cluster calls.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[NamespacedName, Aggregate] = {}

    def get(self, site_key: NamespacedName) -> Optional[Aggregate]:
        with self._lock:
            aggregate = self._data.get(site_key)
        return dict(aggregate) if aggregate is not None else None

    def set(self, site_key: NamespacedName, aggregate: Mapping[str, bytes]):
        snapshot = dict(aggregate)
        with self._lock:
            self._data[site_key] = snapshot

    def forget(self, site_key: NamespacedName):
        with self._lock:
            self._data.pop(site_key, None)

    def compare_and_set(
        self,
        site_key: NamespacedName,
        expected: Optional[Mapping[str, bytes]],
        aggregate: Optional[Mapping[str, bytes]],
    ) -> bool:
        """
        Replace the entry only if it still equals `expected`

        Setting None removes the entry. Returns False when another writer got
        there first, in which case nothing is changed.
        """
        snapshot = dict(aggregate) if aggregate is not None else None
        with self._lock:
            if aggregates_differ(self._data.get(site_key), expected):
                return False
            if snapshot is None:
                self._data.pop(site_key, None)
            else:
                self._data[site_key] = snapshot
            return True

    def differs(self, old: Optional[Mapping[str, bytes]], new: Optional[Mapping[str, bytes]]) -> bool:
        return aggregates_differ(old, new)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
