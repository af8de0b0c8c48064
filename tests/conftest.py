"""Shared fixtures: an in-memory cluster, a fresh aggregate cache and resource factories"""

import pytest

from webid.api.models import ObjectMeta, Page, PageSpec, Site, SiteSpec
from webid.cluster.local import InMemoryCluster
from webid.config import Config
from webid.pages.aggregate import AggregateCache


@pytest.fixture
def config():
    return Config(ingress_domain="webid.example.com")


@pytest.fixture
def cluster():
    return InMemoryCluster()


@pytest.fixture
def cache():
    return AggregateCache()


@pytest.fixture
def make_site():
    def _make(name: str = "s1", image: str = "x:1", replicas: int = 1, namespace: str = "default") -> Site:
        return Site(
            metadata=ObjectMeta(name=name, namespace=namespace),
            spec=SiteSpec(image=image, replica_count=replicas),
        )

    return _make


@pytest.fixture
def make_page():
    def _make(name: str, display_name: str, content: str, site: str = "s1", namespace: str = "default") -> Page:
        return Page(
            metadata=ObjectMeta(name=name, namespace=namespace),
            spec=PageSpec(name=display_name, content=content, site=site),
        )

    return _make
