#!/usr/bin/env python3

"""
CLI tool for managing webid Sites and Pages

Usage:
    webid-manager --help
    webid-manager status default/my-site
    webid-manager reconcile-site default/my-site
    webid-manager reconcile-page default/index-page
    webid-manager digest default/my-site
    webid-manager run --liveness http://0.0.0.0:8080/healthz
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from webid.api.conditions import AVAILABLE, is_condition_true
from webid.api.models import PAGES_HASH_ANNOTATION, NamespacedName
from webid.cluster.base import ClusterClient, PageIndex, ResourceKind
from webid.config import Config, setup_logging
from webid.exceptions import ResourceNotFoundException
from webid.pages.aggregate import AggregateCache, compute_digest
from webid.pages.reconciler import PageReconciler, build_aggregate
from webid.site.children import default_children
from webid.site.reconciler import SiteReconciler

logger = logging.getLogger(__name__)


def _print(data: Dict[str, Any]):
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def get_site_status(cluster: ClusterClient, config: Config, site_key: NamespacedName) -> Dict[str, Any]:
    """Show a Site's conditions, hash annotation and which children exist"""
    site = await cluster.get(ResourceKind.SITE, site_key.namespace, site_key.name)

    children = {}
    for child in default_children(config, AggregateCache()):
        name = child.name_for(site)
        try:
            await cluster.get(child.kind, site_key.namespace, name)
            children[child.label] = {"name": name, "exists": True}
        except ResourceNotFoundException:
            children[child.label] = {"name": name, "exists": False}

    status = {
        "site": str(site_key),
        "image": site.spec.image,
        "replicaCount": site.spec.replica_count,
        "pagesHash": site.metadata.annotations.get(PAGES_HASH_ANNOTATION),
        "available": is_condition_true(site.status.conditions, AVAILABLE),
        "conditions": [c.model_dump(by_alias=True, exclude_none=True, mode="json") for c in site.status.conditions],
        "children": children,
    }
    _print(status)
    return status


async def reconcile_site(
    cluster: ClusterClient, index: PageIndex, config: Config, site_key: NamespacedName
) -> Dict[str, Any]:
    """
    Run one Site pass outside the operator

    The aggregate cache is warmed from the current page listing first, so the
    data blob reflects the Pages as they are now.
    """
    cache = AggregateCache()
    await PageReconciler(cluster, index, cache).sync_site(site_key)

    logger.info(f"Reconciling site {site_key}...")
    site = await SiteReconciler(cluster, config, cache).reconcile(site_key)
    if site is None:
        print(f"Site {site_key} not found")
        return {}
    return await get_site_status(cluster, config, site_key)


async def reconcile_page(cluster: ClusterClient, index: PageIndex, page_key: NamespacedName):
    """
    Run one Page pass outside the operator

    The cache starts empty, so the Site is only re-stamped when its pages
    annotation differs from the digest of the current page listing.
    """
    logger.info(f"Reconciling page {page_key}...")
    await PageReconciler(cluster, index, AggregateCache()).reconcile(page_key)
    logger.info("Reconciliation completed")


async def show_digest(cluster: ClusterClient, index: PageIndex, site_key: NamespacedName) -> Dict[str, Any]:
    """Compare the digest of the live page listing with the one stamped on the Site"""
    site = await cluster.get(ResourceKind.SITE, site_key.namespace, site_key.name)
    pages = await index.pages_for_site(site_key.namespace, site_key.name)
    aggregate = build_aggregate(pages)
    digest = compute_digest(aggregate)
    stamped = site.metadata.annotations.get(PAGES_HASH_ANNOTATION)

    result = {
        "site": str(site_key),
        "pages": sorted(aggregate),
        "digest": digest,
        "annotation": stamped,
        "inSync": digest == stamped,
    }
    _print(result)
    return result


def run_operator(config: Config, liveness: Optional[str] = None):
    """Start the kopf operator in the foreground"""
    import kopf

    import webid.operator  # noqa: F401  registers the handlers

    namespaces: List[str] = [config.namespace] if config.namespace else []
    kopf.run(
        clusterwide=not namespaces,
        namespaces=namespaces,
        liveness_endpoint=liveness,
    )


def _connect():
    from webid.cluster.kube import KubernetesCluster

    return KubernetesCluster.connect()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="webid Site Manager CLI")
    parser.add_argument("--env-file", help="Load environment variables from this .env file")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    status_parser = subparsers.add_parser("status", help="Show site status and children")
    status_parser.add_argument("site", help="Site as namespace/name")

    site_parser = subparsers.add_parser("reconcile-site", help="Reconcile one site")
    site_parser.add_argument("site", help="Site as namespace/name")

    page_parser = subparsers.add_parser("reconcile-page", help="Reconcile one page")
    page_parser.add_argument("page", help="Page as namespace/name")

    digest_parser = subparsers.add_parser("digest", help="Compare the live page digest with the site annotation")
    digest_parser.add_argument("site", help="Site as namespace/name")

    run_parser = subparsers.add_parser("run", help="Run the operator")
    run_parser.add_argument("--liveness", help="Liveness endpoint, e.g. http://0.0.0.0:8080/healthz")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = Config.from_env(dotenv_path=args.env_file)
        setup_logging(config)
        default_namespace = config.namespace or "default"

        if args.command == "run":
            run_operator(config, args.liveness)
            return 0

        cluster = _connect()
        try:
            if args.command == "status":
                asyncio.run(get_site_status(cluster, config, NamespacedName.parse(args.site, default_namespace)))
            elif args.command == "reconcile-site":
                asyncio.run(
                    reconcile_site(cluster, cluster, config, NamespacedName.parse(args.site, default_namespace))
                )
            elif args.command == "reconcile-page":
                asyncio.run(reconcile_page(cluster, cluster, NamespacedName.parse(args.page, default_namespace)))
            elif args.command == "digest":
                asyncio.run(show_digest(cluster, cluster, NamespacedName.parse(args.site, default_namespace)))
            else:
                print(f"Unknown command: {args.command}")
                return 1
        finally:
            cluster.close()
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
