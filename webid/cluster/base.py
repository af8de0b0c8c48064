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

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, List

from webid.api.models import Page


class ResourceKind(str, Enum):
    SITE = "Site"
    PAGE = "Page"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    INGRESS = "Ingress"
    CONFIG_MAP = "ConfigMap"

    @property
    def is_custom(self) -> bool:
        return self in (ResourceKind.SITE, ResourceKind.PAGE)


class ClusterClient(ABC):
    """
    Abstract access to the cluster's object store

    Sites and Pages are exchanged as webid.api.models objects, every other
    kind as the matching kubernetes.client V1 model.
    """

    @abstractmethod
    async def get(self, kind: ResourceKind, namespace: str, name: str) -> Any:
        """
        Fetch one object

        Raises:
            ResourceNotFoundException: the object does not exist
        """
        pass

    @abstractmethod
    async def create(self, kind: ResourceKind, obj: Any) -> Any:
        """Create the object and return it as stored"""
        pass

    @abstractmethod
    async def update(self, kind: ResourceKind, obj: Any) -> Any:
        """
        Replace the object (status excluded for custom resources) and return it as stored

        Raises:
            ResourceNotFoundException: the object does not exist
            ResourceConflictException: obj carries a stale resourceVersion
        """
        pass

    @abstractmethod
    async def update_status(self, kind: ResourceKind, obj: Any) -> Any:
        """Replace only the status subresource of a custom resource"""
        pass

    @abstractmethod
    async def delete(self, kind: ResourceKind, namespace: str, name: str):
        """
        Delete the object; objects carrying finalizers are only marked for deletion

        Raises:
            ResourceNotFoundException: the object does not exist
        """
        pass

    def close(self):
        pass


class PageIndex(ABC):
    """Lookup from a Site to the Pages that reference it"""

    @abstractmethod
    async def pages_for_site(self, namespace: str, site: str) -> List[Page]:
        """Return every Page in `namespace` whose spec.site equals `site`"""
        pass
