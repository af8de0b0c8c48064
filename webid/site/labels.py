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

"""Labels and ownership metadata shared by every child of a Site"""

from typing import Any, Dict, List, Optional

from kubernetes import client

from webid.api.models import API_VERSION, SITE_KIND, Site

NAME_LABEL = "app.kubernetes.io/name"
PART_OF_LABEL = "app.kubernetes.io/part-of"
PART_OF = "webid-operator"


def app_name(site_name: str) -> str:
    return f"{site_name}-nginx"


def selector_labels(site_name: str) -> Dict[str, str]:
    return {
        NAME_LABEL: app_name(site_name),
        PART_OF_LABEL: PART_OF,
    }


def owner_reference(site: Site) -> client.V1OwnerReference:
    """Controller reference pointing at the Site, used by the garbage collector for cascade deletion"""
    return client.V1OwnerReference(
        api_version=API_VERSION,
        kind=SITE_KIND,
        name=site.metadata.name,
        uid=site.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def child_metadata(site: Site, name: str) -> client.V1ObjectMeta:
    return client.V1ObjectMeta(
        name=name,
        namespace=site.metadata.namespace,
        labels=selector_labels(site.metadata.name),
        owner_references=[owner_reference(site)],
    )


def owner_site_name(owner_references: List[Dict[str, Any]]) -> Optional[str]:
    """Name of the controlling Site in a raw ownerReferences list, None when there is none"""
    for ref in owner_references or []:
        if ref.get("kind") == SITE_KIND and ref.get("apiVersion") == API_VERSION and ref.get("controller"):
            return ref.get("name")
    return None
