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
Child resources of a Site

Each ChildResource knows how to name, build and diff one derived object.
The SiteReconciler drives them in a fixed order; the descriptors themselves
never talk to the cluster.
"""

import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from kubernetes import client

from webid.api.models import Site
from webid.cluster.base import ResourceKind
from webid.config import Config
from webid.exceptions import CorruptResourceException
from webid.pages.aggregate import Aggregate, AggregateProvider
from webid.site.labels import child_metadata, selector_labels

logger = logging.getLogger(__name__)

HTTP_PORT = 80
HTTP_PORT_NAME = "http"
CONTAINER_NAME = "main"

CONFIG_VOLUME = "config"
CONFIG_MOUNT_PATH = "/etc/nginx/conf.d"
DATA_VOLUME = "data"
DATA_MOUNT_PATH = "/usr/share/nginx/html"

NGINX_CONFIG_FILE = "default.conf"
NGINX_CONFIG = f"""server {{
    listen       {HTTP_PORT};
    listen  [::]:{HTTP_PORT};
    server_name  localhost;

    location / {{
        root   {DATA_MOUNT_PATH};
        autoindex on;
    }}
}}
"""


def config_blob_name(site_name: str) -> str:
    return f"{site_name}-config"


def data_blob_name(site_name: str) -> str:
    return f"{site_name}-data"


def encode_aggregate(aggregate: Optional[Aggregate]) -> Dict[str, str]:
    """Render an aggregate as ConfigMap binaryData (base64 text values)"""
    return {key: base64.b64encode(value).decode("ascii") for key, value in (aggregate or {}).items()}


def decode_binary_data(binary_data: Optional[Dict[str, str]]) -> Aggregate:
    return {key: base64.b64decode(value) for key, value in (binary_data or {}).items()}


class ChildResource(ABC):
    """One derived object of a Site: its kind, name, desired shape and diff policy"""

    kind: ResourceKind
    # Used in log lines and failure messages, e.g. "Failed to update workload"
    label: str

    def name_for(self, site: Site) -> str:
        return site.metadata.name

    @abstractmethod
    def build(self, site: Site) -> Any:
        """Desired object for `site`, including labels and the owner reference"""
        pass

    def differs(self, site: Site, existing: Any) -> bool:
        """Created once and never diffed unless a subclass says otherwise"""
        return False

    def apply(self, site: Site, existing: Any) -> Any:
        """Patch `existing` toward the desired shape and return it"""
        return existing


class Workload(ChildResource):
    kind = ResourceKind.DEPLOYMENT
    label = "workload"

    @staticmethod
    def _containers(existing: client.V1Deployment) -> List[client.V1Container]:
        spec = existing.spec
        if spec is None or spec.template is None or spec.template.spec is None:
            return []
        return spec.template.spec.containers or []

    def build(self, site: Site) -> client.V1Deployment:
        name = self.name_for(site)
        labels = selector_labels(site.metadata.name)
        container = client.V1Container(
            name=CONTAINER_NAME,
            image=site.spec.image,
            image_pull_policy="IfNotPresent",
            ports=[client.V1ContainerPort(container_port=HTTP_PORT, name=HTTP_PORT_NAME)],
            volume_mounts=[
                client.V1VolumeMount(name=CONFIG_VOLUME, mount_path=CONFIG_MOUNT_PATH, read_only=True),
                client.V1VolumeMount(name=DATA_VOLUME, mount_path=DATA_MOUNT_PATH, read_only=True),
            ],
        )
        volumes = [
            client.V1Volume(
                name=CONFIG_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(name=config_blob_name(site.metadata.name)),
            ),
            client.V1Volume(
                name=DATA_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(name=data_blob_name(site.metadata.name)),
            ),
        ]
        return client.V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=child_metadata(site, name),
            spec=client.V1DeploymentSpec(
                replicas=site.spec.replica_count,
                selector=client.V1LabelSelector(match_labels=labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=client.V1PodSpec(containers=[container], volumes=volumes),
                ),
            ),
        )

    def differs(self, site: Site, existing: client.V1Deployment) -> bool:
        containers = self._containers(existing)
        if len(containers) != 1:
            return True
        return containers[0].image != site.spec.image or existing.spec.replicas != site.spec.replica_count

    def apply(self, site: Site, existing: client.V1Deployment) -> client.V1Deployment:
        containers = self._containers(existing)
        if len(containers) != 1:
            raise CorruptResourceException(
                f"deployment {existing.metadata.name} has {len(containers)} containers (expected 1)"
            )
        containers[0].image = site.spec.image
        existing.spec.replicas = site.spec.replica_count
        return existing


class StaticConfigBlob(ChildResource):
    kind = ResourceKind.CONFIG_MAP
    label = "static config"

    def name_for(self, site: Site) -> str:
        return config_blob_name(site.metadata.name)

    def build(self, site: Site) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=child_metadata(site, self.name_for(site)),
            data={NGINX_CONFIG_FILE: NGINX_CONFIG},
        )


class DataConfigBlob(ChildResource):
    """ConfigMap mirroring the Site's page aggregate as binaryData"""

    kind = ResourceKind.CONFIG_MAP
    label = "data config"

    def __init__(self, provider: AggregateProvider):
        self.provider = provider

    def name_for(self, site: Site) -> str:
        return data_blob_name(site.metadata.name)

    def build(self, site: Site) -> client.V1ConfigMap:
        return client.V1ConfigMap(
            api_version="v1",
            kind="ConfigMap",
            metadata=child_metadata(site, self.name_for(site)),
            binary_data=encode_aggregate(self.provider.get(site.key)),
        )

    def differs(self, site: Site, existing: client.V1ConfigMap) -> bool:
        aggregate = self.provider.get(site.key)
        if aggregate is None:
            # nothing computed for this Site since start-up, keep what is stored
            logger.debug(f"No aggregate cached for site {site.key}, leaving {existing.metadata.name} as is")
            return False
        return self.provider.differs(decode_binary_data(existing.binary_data), aggregate)

    def apply(self, site: Site, existing: client.V1ConfigMap) -> client.V1ConfigMap:
        existing.binary_data = encode_aggregate(self.provider.get(site.key))
        return existing


class NetworkEndpoint(ChildResource):
    kind = ResourceKind.SERVICE
    label = "network endpoint"

    def build(self, site: Site) -> client.V1Service:
        return client.V1Service(
            api_version="v1",
            kind="Service",
            metadata=child_metadata(site, self.name_for(site)),
            spec=client.V1ServiceSpec(
                selector=selector_labels(site.metadata.name),
                ports=[client.V1ServicePort(name=HTTP_PORT_NAME, port=HTTP_PORT, target_port=HTTP_PORT_NAME)],
            ),
        )


class ExternalRoute(ChildResource):
    kind = ResourceKind.INGRESS
    label = "external route"

    def __init__(self, config: Config):
        self.config = config

    def build(self, site: Site) -> client.V1Ingress:
        backend = client.V1IngressBackend(
            service=client.V1IngressServiceBackend(
                name=site.metadata.name,
                port=client.V1ServiceBackendPort(name=HTTP_PORT_NAME),
            )
        )
        rule = client.V1IngressRule(
            host=self.config.ingress_domain,
            http=client.V1HTTPIngressRuleValue(
                paths=[client.V1HTTPIngressPath(path="/", path_type="Prefix", backend=backend)],
            ),
        )
        return client.V1Ingress(
            api_version="networking.k8s.io/v1",
            kind="Ingress",
            metadata=child_metadata(site, self.name_for(site)),
            spec=client.V1IngressSpec(ingress_class_name=self.config.ingress_class, rules=[rule]),
        )


def default_children(config: Config, provider: AggregateProvider) -> List[ChildResource]:
    """The five children of a Site, in the order they are ensured"""
    return [
        Workload(),
        StaticConfigBlob(),
        DataConfigBlob(provider),
        NetworkEndpoint(),
        ExternalRoute(config),
    ]
