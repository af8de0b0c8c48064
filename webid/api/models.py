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
Resource models for the webid custom resources

Site and Page are the two user-declared kinds. The models mirror the CRD
schemas closely enough to round-trip a custom object body: unknown metadata
fields (managedFields, creationTimestamp, ...) are preserved on the way back.
"""

from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

GROUP = "webid.golang.betsys.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

SITE_KIND = "Site"
SITE_PLURAL = "sites"
PAGE_KIND = "Page"
PAGE_PLURAL = "pages"

# Digest of the Site's page aggregate, written by the page reconciler
PAGES_HASH_ANNOTATION = f"{GROUP}/pages"
PAGE_FINALIZER = f"{GROUP}/finalizer"


class NamespacedName(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str, default_namespace: str = "default") -> "NamespacedName":
        """Parse "namespace/name" (or a bare name in default_namespace)"""
        if "/" in value:
            namespace, _, name = value.partition("/")
        else:
            namespace, name = default_namespace, value
        if not namespace or not name:
            raise ValueError(f"invalid resource identity: {value!r}")
        return cls(namespace, name)


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[str] = Field(default=None, alias="lastTransitionTime")
    observed_generation: Optional[int] = Field(default=None, alias="observedGeneration")


class ObjectMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str
    namespace: str = "default"
    uid: Optional[str] = None
    generation: Optional[int] = None
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    deletion_timestamp: Optional[str] = Field(default=None, alias="deletionTimestamp")

    def add_finalizer(self, finalizer: str) -> bool:
        """Add the finalizer, returns False when it was already present"""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove the finalizer, returns False when it was not present"""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


class CustomResource(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(default=API_VERSION, alias="apiVersion")
    kind: str
    metadata: ObjectMeta

    @property
    def key(self) -> NamespacedName:
        return NamespacedName(self.metadata.namespace, self.metadata.name)

    @property
    def is_marked_for_deletion(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def to_body(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible custom object body"""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class SiteSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image: str = Field(..., min_length=1)
    replica_count: int = Field(default=1, ge=1, alias="replicaCount")


class SiteStatus(BaseModel):
    conditions: List[Condition] = Field(default_factory=list)


class Site(CustomResource):
    kind: str = SITE_KIND
    spec: SiteSpec
    status: SiteStatus = Field(default_factory=SiteStatus)


class PageSpec(BaseModel):
    name: str = Field(..., min_length=1)
    content: str = ""
    site: str = Field(..., min_length=1)


class Page(CustomResource):
    kind: str = PAGE_KIND
    spec: PageSpec
    status: Dict[str, Any] = Field(default_factory=dict)

    @property
    def site_key(self) -> NamespacedName:
        return NamespacedName(self.metadata.namespace, self.spec.site)

    def content_bytes(self) -> bytes:
        return self.spec.content.encode("utf-8")
