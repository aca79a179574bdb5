"""Pytest configuration and fixtures."""

import pytest

from capabilities import CERTIFICATE_CAPABILITY, CapabilityRegistry
from config import Config, ImageConfig
from events import EventRecorder
from fakes import FakeKube
from reconcilers.base import ReconcilerContext

CONTROLLER_IMAGE = "registry.example.com/external-secrets/external-secrets:v0.14.0"
BITWARDEN_IMAGE = "registry.example.com/external-secrets/bitwarden-sdk-server:v0.4.0"


@pytest.fixture
def images():
    """Operand images as the operator deployment would supply them."""
    return ImageConfig(
        external_secrets_image=CONTROLLER_IMAGE,
        bitwarden_sdk_server_image=BITWARDEN_IMAGE,
        external_secrets_version="v0.14.0",
        bitwarden_sdk_server_version="v0.4.0",
        operator_version="v1.0.0",
    )


@pytest.fixture
def config(images):
    cfg = Config.default()
    cfg.images = images
    return cfg


@pytest.fixture
def kube():
    """An empty in-memory cluster."""
    return FakeKube()


@pytest.fixture
def no_capabilities():
    return CapabilityRegistry()


@pytest.fixture
def cert_manager_capabilities():
    return CapabilityRegistry([CERTIFICATE_CAPABILITY])


@pytest.fixture
def ctx(kube, config, no_capabilities):
    """Reconciler context on a cluster without cert-manager."""
    return ReconcilerContext(
        kube=kube,
        recorder=EventRecorder(kube),
        capabilities=no_capabilities,
        config=config,
    )


@pytest.fixture
def cert_manager_ctx(kube, config, cert_manager_capabilities):
    """Reconciler context on a cluster with cert-manager installed."""
    return ReconcilerContext(
        kube=kube,
        recorder=EventRecorder(kube),
        capabilities=cert_manager_capabilities,
        config=config,
    )
