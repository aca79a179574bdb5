"""Unit tests for capabilities.py - Capability detection and watch scoping."""

import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from capabilities import (
    CERTIFICATE_CAPABILITY,
    MANAGED_LABEL_SELECTOR,
    CapabilityRegistry,
    WatchSpec,
    build_watch_set,
    detect,
    is_managed,
)
from fakes import FakeKube, api_error


@pytest.mark.asyncio
class TestDetect:
    """Tests for discovery-based detection."""

    async def test_cert_manager_installed(self):
        kube = FakeKube(served={"cert-manager.io/v1": ["certificates", "issuers"]})
        registry = await detect(kube)
        assert registry.has(CERTIFICATE_CAPABILITY)
        assert registry.cert_manager_installed

    async def test_cert_manager_missing(self):
        registry = await detect(FakeKube())
        assert not registry.cert_manager_installed
        assert list(registry) == []

    async def test_discovery_failure_propagates(self):
        kube = FakeKube()
        kube.fail("discover", "cert-manager.io/v1", api_error(500, "InternalError"))
        with pytest.raises(ApiException):
            await detect(kube)


class TestBuildWatchSet:
    """Tests for the scoped watch set."""

    def test_managed_kinds_are_label_filtered(self):
        watches = build_watch_set(CapabilityRegistry())
        deployment = [w for w in watches if w.kind == "Deployment"]
        assert deployment == [WatchSpec("Deployment", MANAGED_LABEL_SELECTOR)]

    def test_primary_kinds_unfiltered(self):
        watches = build_watch_set(CapabilityRegistry())
        assert WatchSpec("ExternalSecretsConfig") in watches
        assert WatchSpec("ExternalSecretsManager") in watches

    def test_certificates_only_with_cert_manager(self):
        assert not any(w.kind == "Certificate" for w in build_watch_set(CapabilityRegistry()))
        watches = build_watch_set(CapabilityRegistry([CERTIFICATE_CAPABILITY]))
        assert WatchSpec("Certificate", MANAGED_LABEL_SELECTOR) in watches


class TestIsManaged:
    """Tests for the managed label check."""

    def test_managed(self):
        assert is_managed({"metadata": {"labels": {"app": "external-secrets"}}})

    def test_unmanaged(self):
        assert not is_managed({"metadata": {}})
