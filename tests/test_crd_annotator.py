"""Unit tests for the CRD annotator."""

import pytest

from builder import CERT_MANAGER_INJECT_CA_FROM_VALUE
from conditions import UPDATE_ANNOTATION, find_status_condition
from drift import CERT_MANAGER_INJECT_CA_FROM_ANNOTATION
from fakes import api_error, cert_manager_spec, make_esc
from reconcilers.base import Outcome
from reconcilers.crd_annotator import ALL_CRDS_KEY, CRD_LABEL_KEY, CRDAnnotator


def crd(name, managed=True, annotations=None):
    labels = {CRD_LABEL_KEY: "controller"} if managed else {}
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": name, "labels": labels, "annotations": dict(annotations or {})},
    }


def injected(kube, name):
    stored = kube.stored("CustomResourceDefinition", name)
    return stored["metadata"]["annotations"].get(CERT_MANAGER_INJECT_CA_FROM_ANNOTATION)


def annotation_condition(kube):
    esc = kube.stored("ExternalSecretsConfig", "cluster")
    return find_status_condition(esc["status"]["conditions"], UPDATE_ANNOTATION)


@pytest.fixture
def annotator(cert_manager_ctx):
    return CRDAnnotator(cert_manager_ctx)


@pytest.fixture
def crds(kube):
    kube.put(crd("externalsecrets.external-secrets.io"))
    kube.put(crd("secretstores.external-secrets.io"))
    kube.put(crd("certificates.cert-manager.io", managed=False))


@pytest.mark.asyncio
class TestReconcile:
    """Tests for annotation passes."""

    async def test_annotates_all_managed_crds(self, kube, annotator, crds):
        kube.put(make_esc(cert_manager_spec(injectAnnotations="true")))
        result = await annotator.reconcile(ALL_CRDS_KEY)

        assert result.success
        assert injected(kube, "externalsecrets.external-secrets.io") == CERT_MANAGER_INJECT_CA_FROM_VALUE
        assert injected(kube, "secretstores.external-secrets.io") == CERT_MANAGER_INJECT_CA_FROM_VALUE
        assert injected(kube, "certificates.cert-manager.io") is None
        cond = annotation_condition(kube)
        assert cond["status"] == "True"
        assert cond["reason"] == "Completed"

    async def test_single_crd(self, kube, annotator, crds):
        kube.put(make_esc(cert_manager_spec(injectAnnotations="true")))
        await annotator.reconcile("secretstores.external-secrets.io")
        assert injected(kube, "secretstores.external-secrets.io") == CERT_MANAGER_INJECT_CA_FROM_VALUE
        assert injected(kube, "externalsecrets.external-secrets.io") is None

    async def test_already_annotated_not_patched(self, kube, annotator):
        kube.put(
            crd(
                "externalsecrets.external-secrets.io",
                annotations={CERT_MANAGER_INJECT_CA_FROM_ANNOTATION: CERT_MANAGER_INJECT_CA_FROM_VALUE},
            )
        )
        kube.put(make_esc(cert_manager_spec(injectAnnotations="true")))
        await annotator.reconcile(ALL_CRDS_KEY)
        assert kube.writes_of("patch") == []

    async def test_disabled(self, kube, annotator, crds):
        kube.put(make_esc(cert_manager_spec()))
        result = await annotator.reconcile(ALL_CRDS_KEY)
        assert result.success
        assert kube.writes == []

    async def test_config_missing(self, annotator):
        result = await annotator.reconcile(ALL_CRDS_KEY)
        assert result.success

    async def test_patch_failure(self, kube, annotator, crds):
        kube.put(make_esc(cert_manager_spec(injectAnnotations="true")))
        kube.fail("patch", "CustomResourceDefinition", api_error(500, "InternalError"))
        result = await annotator.reconcile(ALL_CRDS_KEY)

        assert result.outcome == Outcome.RETRY_REQUIRED
        cond = annotation_condition(kube)
        assert cond["status"] == "False"
        assert cond["message"].startswith("failed to add annotations:")

    async def test_missing_crd(self, kube, annotator):
        kube.put(make_esc(cert_manager_spec(injectAnnotations="true")))
        result = await annotator.reconcile("gone.external-secrets.io")
        assert result.outcome == Outcome.RETRY_REQUIRED


class TestMapEvent:
    """Tests for watch event mapping."""

    @pytest.fixture
    def annotator(self, cert_manager_ctx):
        return CRDAnnotator(cert_manager_ctx)

    def test_config_generation_change(self, annotator):
        assert annotator.map_event("MODIFIED", make_esc(generation=2), make_esc()) == [ALL_CRDS_KEY]

    def test_config_status_change_ignored(self, annotator):
        new = make_esc()
        new["status"] = {"conditions": []}
        assert annotator.map_event("MODIFIED", new, make_esc()) == []

    def test_crd_annotation_removed(self, annotator):
        old = crd("a.external-secrets.io", annotations={CERT_MANAGER_INJECT_CA_FROM_ANNOTATION: "x"})
        new = crd("a.external-secrets.io")
        assert annotator.map_event("MODIFIED", new, old) == ["a.external-secrets.io"]

    def test_crd_unrelated_change_ignored(self, annotator):
        old = crd("a.external-secrets.io")
        assert annotator.map_event("MODIFIED", crd("a.external-secrets.io"), old) == []

    def test_crd_deleted_ignored(self, annotator):
        assert annotator.map_event("DELETED", crd("a.external-secrets.io"), None) == []

    def test_unmanaged_crd_ignored(self, annotator):
        assert annotator.map_event("ADDED", crd("b.example.com", managed=False), None) == []
