"""
Unit tests for SiteReconciler.

Every test drives the reconciler against the in-memory cluster and inspects
the recorded write operations and the resulting Site conditions.
"""

import asyncio

import pytest
from kubernetes import client

from webid.api.conditions import AVAILABLE, UP_TO_DATE, find_condition, set_condition
from webid.api.models import ConditionStatus, NamespacedName
from webid.cluster.base import ResourceKind
from webid.cluster.local import InMemoryCluster
from webid.exceptions import CorruptResourceException
from webid.site.children import decode_binary_data, encode_aggregate
from webid.site.reconciler import SiteReconciler

SITE = NamespacedName("default", "s1")

CHILD_KINDS = [
    ResourceKind.DEPLOYMENT,
    ResourceKind.CONFIG_MAP,
    ResourceKind.CONFIG_MAP,
    ResourceKind.SERVICE,
    ResourceKind.INGRESS,
]


@pytest.fixture
def reconciler(cluster, config, cache):
    return SiteReconciler(cluster, config, cache)


async def _available(cluster):
    site = await cluster.get(ResourceKind.SITE, "default", "s1")
    return find_condition(site.status.conditions, AVAILABLE)


def _child_writes(cluster):
    return [op for op in cluster.operations if op[1] != ResourceKind.SITE]


class TestFreshSite:
    @pytest.mark.asyncio
    async def test_missing_site_is_ignored(self, reconciler, cluster):
        assert await reconciler.reconcile(SITE) is None
        assert cluster.operations == []

    @pytest.mark.asyncio
    async def test_creates_five_children(self, reconciler, cluster, make_site):
        """One pass creates every child in order and ends Available=True."""
        await cluster.add_site(make_site(image="x:1", replicas=2))

        site = await reconciler.reconcile(SITE)

        assert [(verb, kind) for verb, kind, _ in _child_writes(cluster)] == [("create", k) for k in CHILD_KINDS]
        assert [name for _, _, name in _child_writes(cluster)] == ["s1", "s1-config", "s1-data", "s1", "s1"]
        for kind in set(CHILD_KINDS):
            for obj in cluster.objects(kind):
                (owner,) = obj.metadata.owner_references
                assert owner.uid == site.metadata.uid

        available = find_condition(site.status.conditions, AVAILABLE)
        assert available.status == ConditionStatus.TRUE
        assert available.reason == "Reconciling"
        assert available.message == "Finished reconciliation"

    @pytest.mark.asyncio
    async def test_unknown_status_written_first(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        await reconciler.reconcile(SITE)

        assert cluster.operations[1] == ("update_status", ResourceKind.SITE, "s1")
        assert cluster.operations[-1] == ("update_status", ResourceKind.SITE, "s1")

    @pytest.mark.asyncio
    async def test_second_pass_changes_no_children(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        await reconciler.reconcile(SITE)
        before = len(_child_writes(cluster))

        await reconciler.reconcile(SITE)

        assert len(_child_writes(cluster)) == before
        assert (await _available(cluster)).status == ConditionStatus.TRUE


class TestWorkloadDrift:
    @pytest.mark.asyncio
    async def test_image_drift_updates_only_workload(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site(image="x:1", replicas=2))
        await reconciler.reconcile(SITE)

        deployment = await cluster.get(ResourceKind.DEPLOYMENT, "default", "s1")
        deployment.spec.template.spec.containers[0].image = "x:0"
        deployment.spec.replicas = 7
        await cluster.update(ResourceKind.DEPLOYMENT, deployment)
        before = len(cluster.operations)

        await reconciler.reconcile(SITE)

        child_ops = [op for op in cluster.operations[before:] if op[1] != ResourceKind.SITE]
        assert child_ops == [("update", ResourceKind.DEPLOYMENT, "s1")]
        deployment = await cluster.get(ResourceKind.DEPLOYMENT, "default", "s1")
        assert deployment.spec.template.spec.containers[0].image == "x:1"
        assert deployment.spec.replicas == 2

    @pytest.mark.asyncio
    async def test_spec_change_rolls_workload(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site(image="x:1"))
        await reconciler.reconcile(SITE)

        site = await cluster.get(ResourceKind.SITE, "default", "s1")
        site.spec.image = "x:2"
        await cluster.update(ResourceKind.SITE, site)
        await reconciler.reconcile(SITE)

        deployment = await cluster.get(ResourceKind.DEPLOYMENT, "default", "s1")
        assert deployment.spec.template.spec.containers[0].image == "x:2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [0, 2])
    async def test_corrupt_workload_deleted_then_recreated(self, reconciler, cluster, make_site, count):
        await cluster.add_site(make_site())
        await reconciler.reconcile(SITE)

        deployment = await cluster.get(ResourceKind.DEPLOYMENT, "default", "s1")
        deployment.spec.template.spec.containers = [
            client.V1Container(name=f"c{i}", image="x:1") for i in range(count)
        ]
        await cluster.update(ResourceKind.DEPLOYMENT, deployment)

        with pytest.raises(CorruptResourceException):
            await reconciler.reconcile(SITE)

        assert not cluster.exists(ResourceKind.DEPLOYMENT, "default", "s1")
        available = await _available(cluster)
        assert available.status == ConditionStatus.FALSE
        assert available.message == "Failed to update workload"

        await reconciler.reconcile(SITE)

        deployment = await cluster.get(ResourceKind.DEPLOYMENT, "default", "s1")
        assert len(deployment.spec.template.spec.containers) == 1
        assert (await _available(cluster)).status == ConditionStatus.TRUE


class TestFailures:
    @pytest.mark.asyncio
    async def test_create_failure_aborts_remaining_steps(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        cluster.fail_next("create", ResourceKind.SERVICE, RuntimeError("quota exceeded"))

        with pytest.raises(RuntimeError, match="quota exceeded"):
            await reconciler.reconcile(SITE)

        assert not cluster.exists(ResourceKind.INGRESS, "default", "s1")
        available = await _available(cluster)
        assert available.status == ConditionStatus.FALSE
        assert available.message == "Failed to create network endpoint"

    @pytest.mark.asyncio
    async def test_fetch_failure(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        cluster.fail_next("get", ResourceKind.CONFIG_MAP, RuntimeError("connection reset"))

        with pytest.raises(RuntimeError):
            await reconciler.reconcile(SITE)

        assert (await _available(cluster)).message == "Failed to fetch static config"

    @pytest.mark.asyncio
    async def test_status_write_failure_does_not_mask_error(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        await reconciler.reconcile(SITE)
        await cluster.delete(ResourceKind.SERVICE, "default", "s1")

        cluster.fail_next("create", ResourceKind.SERVICE, RuntimeError("original"))
        cluster.fail_next("update_status", ResourceKind.SITE, RuntimeError("status"))

        with pytest.raises(RuntimeError, match="original"):
            await reconciler.reconcile(SITE)

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        cluster.fail_next("create", ResourceKind.INGRESS, RuntimeError("webhook timeout"))
        with pytest.raises(RuntimeError):
            await reconciler.reconcile(SITE)

        await reconciler.reconcile(SITE)

        assert cluster.exists(ResourceKind.INGRESS, "default", "s1")
        assert (await _available(cluster)).status == ConditionStatus.TRUE

    @pytest.mark.asyncio
    async def test_cancellation_is_not_reported(self, reconciler, cluster, make_site):
        """A cancelled pass propagates and never writes Available=False."""
        await cluster.add_site(make_site())
        cluster.fail_next("get", ResourceKind.DEPLOYMENT, asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await reconciler.reconcile(SITE)

        assert (await _available(cluster)).status == ConditionStatus.UNKNOWN


class TestPageData:
    @pytest.mark.asyncio
    async def test_data_blob_follows_cache(self, reconciler, cluster, cache, make_site):
        await cluster.add_site(make_site())
        await reconciler.reconcile(SITE)

        cache.set(SITE, {"idx": b"hello"})
        before = len(cluster.operations)
        await reconciler.reconcile(SITE)

        child_ops = [op for op in cluster.operations[before:] if op[1] != ResourceKind.SITE]
        assert child_ops == [("update", ResourceKind.CONFIG_MAP, "s1-data")]
        blob = await cluster.get(ResourceKind.CONFIG_MAP, "default", "s1-data")
        assert decode_binary_data(blob.binary_data) == {"idx": b"hello"}

    @pytest.mark.asyncio
    async def test_cold_cache_keeps_existing_data(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        await reconciler.reconcile(SITE)
        blob = await cluster.get(ResourceKind.CONFIG_MAP, "default", "s1-data")
        blob.binary_data = encode_aggregate({"idx": b"from before the restart"})
        await cluster.update(ResourceKind.CONFIG_MAP, blob)

        await reconciler.reconcile(SITE)

        blob = await cluster.get(ResourceKind.CONFIG_MAP, "default", "s1-data")
        assert decode_binary_data(blob.binary_data) == {"idx": b"from before the restart"}

    @pytest.mark.asyncio
    async def test_up_to_date_flipped_back(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        await reconciler.reconcile(SITE)
        site = await cluster.get(ResourceKind.SITE, "default", "s1")
        site.status.conditions = set_condition(
            site.status.conditions, UP_TO_DATE, ConditionStatus.FALSE, "PageChanged", "Reconciling"
        )
        await cluster.update_status(ResourceKind.SITE, site)

        site = await reconciler.reconcile(SITE)

        up_to_date = find_condition(site.status.conditions, UP_TO_DATE)
        assert up_to_date.status == ConditionStatus.TRUE
        assert up_to_date.reason == "PagesSynced"

    @pytest.mark.asyncio
    async def test_up_to_date_not_added_without_page_signal(self, reconciler, cluster, make_site):
        await cluster.add_site(make_site())
        site = await reconciler.reconcile(SITE)
        assert find_condition(site.status.conditions, UP_TO_DATE) is None


class YieldingCluster(InMemoryCluster):
    """In-memory cluster whose reads give up the event loop, so passes interleave"""

    async def get(self, kind, namespace, name):
        await asyncio.sleep(0)
        return await super().get(kind, namespace, name)


class TestConcurrentPasses:
    @pytest.mark.asyncio
    async def test_overlapping_passes_on_one_site(self, config, cache, make_site):
        """A Site event and a child event arriving together both succeed."""
        cluster = YieldingCluster()
        await cluster.add_site(make_site())
        reconciler = SiteReconciler(cluster, config, cache)

        first, second = await asyncio.gather(reconciler.reconcile(SITE), reconciler.reconcile(SITE))

        assert find_condition(first.status.conditions, AVAILABLE).status == ConditionStatus.TRUE
        assert find_condition(second.status.conditions, AVAILABLE).status == ConditionStatus.TRUE
        creates = [op for op in cluster.operations if op[0] == "create" and op[1] != ResourceKind.SITE]
        assert len(creates) == len(CHILD_KINDS)

    @pytest.mark.asyncio
    async def test_different_sites_run_side_by_side(self, config, cache, make_site):
        cluster = YieldingCluster()
        await cluster.add_site(make_site())
        await cluster.add_site(make_site("s2"))
        reconciler = SiteReconciler(cluster, config, cache)

        results = await asyncio.gather(
            reconciler.reconcile(SITE), reconciler.reconcile(NamespacedName("default", "s2"))
        )

        assert [site.metadata.name for site in results] == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_lock_dropped_for_deleted_site(self, reconciler):
        assert await reconciler.reconcile(SITE) is None
        assert reconciler._locks == {}
