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
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from asgiref.sync import sync_to_async
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from webid.api.models import GROUP, PAGE_PLURAL, SITE_PLURAL, VERSION, Page, Site
from webid.cluster.base import ClusterClient, PageIndex, ResourceKind
from webid.exceptions import ResourceConflictException, ResourceNotFoundException

logger = logging.getLogger(__name__)


class _NativeOps(NamedTuple):
    read: Callable
    create: Callable
    replace: Callable
    delete: Callable


_CUSTOM_PLURALS = {
    ResourceKind.SITE: SITE_PLURAL,
    ResourceKind.PAGE: PAGE_PLURAL,
}

_CUSTOM_MODELS = {
    ResourceKind.SITE: Site,
    ResourceKind.PAGE: Page,
}


@contextmanager
def _translate_errors(kind: ResourceKind, namespace: str, name: str):
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise ResourceNotFoundException(kind.value, namespace, name) from e
        if e.status == 409:
            raise ResourceConflictException(kind.value, namespace, name, e.reason or "") from e
        raise


def _run(func: Callable, *args, **kwargs):
    # the kubernetes client is blocking, keep it off the event loop
    return sync_to_async(func, thread_sensitive=False)(*args, **kwargs)


class KubernetesCluster(ClusterClient, PageIndex):
    """ClusterClient backed by the Kubernetes API server"""

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client = api_client or client.ApiClient()
        self.core_api = client.CoreV1Api(self.api_client)
        self.apps_api = client.AppsV1Api(self.api_client)
        self.networking_api = client.NetworkingV1Api(self.api_client)
        self.custom_api = client.CustomObjectsApi(self.api_client)
        self._native: Dict[ResourceKind, _NativeOps] = {
            ResourceKind.DEPLOYMENT: _NativeOps(
                self.apps_api.read_namespaced_deployment,
                self.apps_api.create_namespaced_deployment,
                self.apps_api.replace_namespaced_deployment,
                self.apps_api.delete_namespaced_deployment,
            ),
            ResourceKind.SERVICE: _NativeOps(
                self.core_api.read_namespaced_service,
                self.core_api.create_namespaced_service,
                self.core_api.replace_namespaced_service,
                self.core_api.delete_namespaced_service,
            ),
            ResourceKind.INGRESS: _NativeOps(
                self.networking_api.read_namespaced_ingress,
                self.networking_api.create_namespaced_ingress,
                self.networking_api.replace_namespaced_ingress,
                self.networking_api.delete_namespaced_ingress,
            ),
            ResourceKind.CONFIG_MAP: _NativeOps(
                self.core_api.read_namespaced_config_map,
                self.core_api.create_namespaced_config_map,
                self.core_api.replace_namespaced_config_map,
                self.core_api.delete_namespaced_config_map,
            ),
        }

    @classmethod
    def connect(cls) -> "KubernetesCluster":
        """Load in-cluster credentials, falling back to the local kubeconfig"""
        try:
            config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Using local kubeconfig")
        return cls()

    def close(self):
        self.api_client.close()

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> Any:
        with _translate_errors(kind, namespace, name):
            if kind.is_custom:
                body = await _run(
                    self.custom_api.get_namespaced_custom_object,
                    GROUP,
                    VERSION,
                    namespace,
                    _CUSTOM_PLURALS[kind],
                    name,
                )
                return _CUSTOM_MODELS[kind].model_validate(body)
            return await _run(self._native[kind].read, name, namespace)

    async def create(self, kind: ResourceKind, obj: Any) -> Any:
        namespace, name = obj.metadata.namespace, obj.metadata.name
        with _translate_errors(kind, namespace, name):
            if kind.is_custom:
                body = await _run(
                    self.custom_api.create_namespaced_custom_object,
                    GROUP,
                    VERSION,
                    namespace,
                    _CUSTOM_PLURALS[kind],
                    obj.to_body(),
                )
                return _CUSTOM_MODELS[kind].model_validate(body)
            return await _run(self._native[kind].create, namespace, obj)

    async def update(self, kind: ResourceKind, obj: Any) -> Any:
        namespace, name = obj.metadata.namespace, obj.metadata.name
        with _translate_errors(kind, namespace, name):
            if kind.is_custom:
                body = await _run(
                    self.custom_api.replace_namespaced_custom_object,
                    GROUP,
                    VERSION,
                    namespace,
                    _CUSTOM_PLURALS[kind],
                    name,
                    obj.to_body(),
                )
                return _CUSTOM_MODELS[kind].model_validate(body)
            return await _run(self._native[kind].replace, name, namespace, obj)

    async def update_status(self, kind: ResourceKind, obj: Any) -> Any:
        if not kind.is_custom:
            raise ValueError(f"status writes are only supported for custom resources, not {kind.value}")
        namespace, name = obj.metadata.namespace, obj.metadata.name
        with _translate_errors(kind, namespace, name):
            body = await _run(
                self.custom_api.replace_namespaced_custom_object_status,
                GROUP,
                VERSION,
                namespace,
                _CUSTOM_PLURALS[kind],
                name,
                obj.to_body(),
            )
            return _CUSTOM_MODELS[kind].model_validate(body)

    async def delete(self, kind: ResourceKind, namespace: str, name: str):
        with _translate_errors(kind, namespace, name):
            if kind.is_custom:
                await _run(
                    self.custom_api.delete_namespaced_custom_object,
                    GROUP,
                    VERSION,
                    namespace,
                    _CUSTOM_PLURALS[kind],
                    name,
                )
                return
            await _run(self._native[kind].delete, name, namespace)

    async def pages_for_site(self, namespace: str, site: str) -> List[Page]:
        # spec fields cannot be used as field selectors on custom resources
        result = await _run(
            self.custom_api.list_namespaced_custom_object,
            GROUP,
            VERSION,
            namespace,
            PAGE_PLURAL,
        )
        pages = []
        for item in result.get("items", []):
            if (item.get("spec") or {}).get("site") == site:
                pages.append(Page.model_validate(item))
        return pages
