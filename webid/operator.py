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
kopf handlers delivering Site and Page events to the reconcilers

Importing this module registers the handlers with kopf's default registry;
`webid-manager run` starts the operator on top of it.
"""

import logging
from typing import Any, Dict, List

import kopf

from webid.api.models import GROUP, PAGE_FINALIZER, PAGE_PLURAL, SITE_PLURAL, VERSION, NamespacedName
from webid.cluster.kube import KubernetesCluster
from webid.config import Config, setup_logging
from webid.pages.aggregate import AggregateCache
from webid.pages.reconciler import PageReconciler
from webid.site.labels import PART_OF, PART_OF_LABEL, owner_site_name
from webid.site.reconciler import SiteReconciler

logger = logging.getLogger(__name__)

# Child kinds whose changes are routed back to the owning Site
CHILD_RESOURCES = [
    ("apps/v1", "deployments"),
    ("v1", "services"),
    ("v1", "configmaps"),
    ("networking.k8s.io/v1", "ingresses"),
]


def configure_settings(settings: kopf.OperatorSettings):
    # only warnings and errors become Kubernetes events
    settings.posting.level = logging.WARNING
    # kopf manages the Page finalizer as its own, so terminating Pages reach the delete handler
    settings.persistence.finalizer = PAGE_FINALIZER


@kopf.on.startup()
async def startup(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any):
    config = Config.from_env()
    setup_logging(config)
    configure_settings(settings)

    cluster = KubernetesCluster.connect()
    cache = AggregateCache()
    memo.config = config
    memo.cluster = cluster
    memo.cache = cache
    memo.site_reconciler = SiteReconciler(cluster, config, cache)
    memo.page_reconciler = PageReconciler(cluster, cluster, cache)
    logger.info(f"webid operator started, ingress {config.ingress_class}/{config.ingress_domain}")


@kopf.on.cleanup()
async def cleanup(memo: kopf.Memo, **_: Any):
    cluster = getattr(memo, "cluster", None)
    if cluster is not None:
        cluster.close()
    logger.info("webid operator stopped")


def _temporary_error(memo: kopf.Memo, message: str, error: Exception) -> kopf.TemporaryError:
    logger.error(f"{message}: {error}")
    return kopf.TemporaryError(f"{message}: {error}", delay=memo.config.retry_delay)


@kopf.on.create(GROUP, VERSION, SITE_PLURAL)
@kopf.on.update(GROUP, VERSION, SITE_PLURAL)
@kopf.on.resume(GROUP, VERSION, SITE_PLURAL)
async def reconcile_site(namespace: str, name: str, memo: kopf.Memo, **_: Any):
    site_key = NamespacedName(namespace, name)
    try:
        await memo.site_reconciler.reconcile(site_key)
    except Exception as e:
        raise _temporary_error(memo, f"Site {site_key} reconciliation failed", e) from e


@kopf.on.create(GROUP, VERSION, PAGE_PLURAL)
@kopf.on.update(GROUP, VERSION, PAGE_PLURAL)
@kopf.on.resume(GROUP, VERSION, PAGE_PLURAL)
@kopf.on.delete(GROUP, VERSION, PAGE_PLURAL)
async def reconcile_page(namespace: str, name: str, memo: kopf.Memo, **_: Any):
    page_key = NamespacedName(namespace, name)
    try:
        await memo.page_reconciler.reconcile(page_key)
    except Exception as e:
        raise _temporary_error(memo, f"Page {page_key} reconciliation failed", e) from e


async def _child_changed(namespace: str, meta: Dict[str, Any], memo: kopf.Memo):
    site = owner_site_name(meta.get("ownerReferences") or [])
    if site is None:
        return
    site_key = NamespacedName(namespace, site)
    try:
        await memo.site_reconciler.reconcile(site_key)
    except Exception as e:
        # event handlers are not retried, the next Site delivery picks it up
        logger.warning(f"Site {site_key} reconciliation after a child change failed: {e}")


def _register_child_handlers(resources: List[tuple]):
    for group_version, plural in resources:

        @kopf.on.event(group_version, plural, id=f"{plural}-changed", labels={PART_OF_LABEL: PART_OF})
        async def child_event(namespace: str, meta: Dict[str, Any], memo: kopf.Memo, **_: Any):
            await _child_changed(namespace, meta, memo)


_register_child_handlers(CHILD_RESOURCES)
