"""
Unit tests for the kopf handler registration.

Runs only where the `operator` extra is installed. The cause detection and
finalizer bookkeeping are kopf's own, fed with Page and Site bodies.
"""

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

kopf = pytest.importorskip("kopf")

from kopf._cogs.structs import bodies, ephemera, patches, references  # noqa: E402
from kopf._core.intents import causes  # noqa: E402

import webid.operator as webid_operator  # noqa: E402
from webid.api.models import GROUP, PAGE_FINALIZER, PAGE_KIND, PAGE_PLURAL, SITE_KIND, SITE_PLURAL, VERSION  # noqa: E402
from webid.api.models import NamespacedName  # noqa: E402
from webid.config import Config  # noqa: E402
from webid.site.reconciler import SiteReconciler  # noqa: E402

PAGES = references.Resource(group=GROUP, version=VERSION, plural=PAGE_PLURAL, kind=PAGE_KIND, namespaced=True)
SITES = references.Resource(group=GROUP, version=VERSION, plural=SITE_PLURAL, kind=SITE_KIND, namespaced=True)


def _settings() -> kopf.OperatorSettings:
    settings = kopf.OperatorSettings()
    webid_operator.configure_settings(settings)
    return settings


def _cause(resource, raw_body):
    return causes.detect_changing_cause(
        finalizer=_settings().persistence.finalizer,
        raw_event={"type": "MODIFIED", "object": raw_body},
        body=bodies.Body(raw_body),
        resource=resource,
        logger=logging.getLogger(__name__),
        patch=patches.Patch(),
        memo=ephemera.Memo(),
        indices={},
    )


def _page_body(**metadata):
    return {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": PAGE_KIND,
        "metadata": {"name": "p1", "namespace": "default", "uid": "uid-p1", **metadata},
        "spec": {"name": "idx", "content": "hello", "site": "s1"},
    }


class TestSettings:
    def test_page_finalizer_is_kopf_finalizer(self):
        settings = _settings()
        assert settings.persistence.finalizer == PAGE_FINALIZER
        assert settings.posting.level == logging.WARNING


class TestPageDeletion:
    def test_terminating_page_reaches_delete_handler(self):
        """A Page held only by the webid finalizer is still handed to reconcile_page."""
        body = _page_body(finalizers=[PAGE_FINALIZER], deletionTimestamp="2025-01-01T00:00:00Z")
        cause = _cause(PAGES, body)

        assert cause.reason == causes.Reason.DELETE
        registry = kopf.get_default_registry()
        handlers = list(registry._changing.iter_handlers(cause=cause))
        assert [handler.fn for handler in handlers] == [webid_operator.reconcile_page]

    def test_active_page_keeps_its_finalizer(self):
        cause = _cause(PAGES, _page_body(finalizers=[PAGE_FINALIZER]))

        assert cause.reason != causes.Reason.DELETE
        assert kopf.get_default_registry()._changing.requires_finalizer(cause=cause)

    def test_sites_get_no_finalizer(self):
        body = {
            "apiVersion": f"{GROUP}/{VERSION}",
            "kind": SITE_KIND,
            "metadata": {"name": "s1", "namespace": "default", "uid": "uid-s1"},
            "spec": {"image": "x:1", "replicaCount": 1},
        }
        cause = _cause(SITES, body)

        assert not kopf.get_default_registry()._changing.requires_finalizer(cause=cause)


class TestStartup:
    @pytest.mark.asyncio
    async def test_memo_wiring(self):
        memo = kopf.Memo()
        settings = kopf.OperatorSettings()
        cluster = MagicMock()
        with patch.object(webid_operator.Config, "from_env", return_value=Config(ingress_domain="web.example.com")), \
                patch.object(webid_operator, "setup_logging"), \
                patch.object(webid_operator.KubernetesCluster, "connect", return_value=cluster):
            await webid_operator.startup(settings=settings, memo=memo)

        assert settings.persistence.finalizer == PAGE_FINALIZER
        assert memo.cluster is cluster
        assert isinstance(memo.site_reconciler, SiteReconciler)
        assert memo.site_reconciler.provider is memo.cache
        assert memo.page_reconciler.cache is memo.cache


class TestChildEvents:
    @pytest.mark.asyncio
    async def test_child_change_reconciles_owner(self):
        memo = kopf.Memo()
        memo.site_reconciler = MagicMock(reconcile=AsyncMock())
        meta = {
            "ownerReferences": [
                {"apiVersion": f"{GROUP}/{VERSION}", "kind": SITE_KIND, "name": "s1", "controller": True}
            ]
        }

        await webid_operator._child_changed("default", meta, memo)

        memo.site_reconciler.reconcile.assert_awaited_once_with(NamespacedName("default", "s1"))

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        memo = kopf.Memo()
        memo.site_reconciler = MagicMock(reconcile=AsyncMock(side_effect=RuntimeError("conflict")))
        meta = {
            "ownerReferences": [
                {"apiVersion": f"{GROUP}/{VERSION}", "kind": SITE_KIND, "name": "s1", "controller": True}
            ]
        }

        with caplog.at_level(logging.WARNING, logger="webid.operator"):
            await webid_operator._child_changed("default", meta, memo)

        assert "after a child change failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unowned_child_is_ignored(self):
        memo = kopf.Memo()
        memo.site_reconciler = MagicMock(reconcile=AsyncMock())

        await webid_operator._child_changed("default", {"ownerReferences": []}, memo)

        memo.site_reconciler.reconcile.assert_not_called()
