"""Unit tests for drift.py - Per-kind drift detection."""

import copy

import pytest

from drift import (
    CERT_MANAGER_INJECT_CA_FROM_ANNOTATION,
    covers,
    has_object_changed,
    object_metadata_modified,
    semantic_equal,
)

LABELS = {"app": "external-secrets", "app.kubernetes.io/managed-by": "external-secrets-operator"}


def deployment():
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "external-secrets", "namespace": "external-secrets", "labels": dict(LABELS)},
        "spec": {
            "replicas": 1,
            "template": {
                "metadata": {"labels": dict(LABELS)},
                "spec": {
                    "serviceAccountName": "external-secrets",
                    "containers": [
                        {
                            "name": "external-secrets",
                            "image": "quay.io/es:v1",
                            "args": ["--concurrent=1"],
                            "ports": [{"containerPort": 8080}],
                        }
                    ],
                },
            },
        },
    }


def with_server_defaults(obj):
    """What the API server returns after defaulting."""
    live = copy.deepcopy(obj)
    live["metadata"]["uid"] = "1234"
    live["metadata"]["resourceVersion"] = "99"
    pod = live["spec"]["template"]["spec"]
    pod["dnsPolicy"] = "ClusterFirst"
    pod["containers"][0]["terminationMessagePath"] = "/dev/termination-log"
    pod["containers"][0]["ports"][0]["protocol"] = "TCP"
    live["status"] = {"readyReplicas": 1}
    return live


class TestHelpers:
    """Tests for comparison helpers."""

    def test_empty_values_compare_equal(self):
        assert semantic_equal({"a": None, "b": []}, {})

    def test_covers_ignores_extra_live_fields(self):
        assert covers({"a": 1}, {"a": 1, "b": 2})

    def test_covers_requires_same_list_length(self):
        assert not covers([{"a": 1}], [{"a": 1}, {"a": 2}])

    def test_labels_are_exact(self):
        assert object_metadata_modified(
            {"metadata": {"labels": {"a": "1"}}}, {"metadata": {"labels": {"a": "1", "b": "2"}}}
        )


class TestDeploymentDrift:
    """Tests for deployment comparison."""

    def test_server_defaults_are_not_drift(self):
        desired = deployment()
        assert not has_object_changed(desired, with_server_defaults(desired))

    def test_image_change(self):
        desired = deployment()
        live = with_server_defaults(desired)
        live["spec"]["template"]["spec"]["containers"][0]["image"] = "quay.io/es:v0"
        assert has_object_changed(desired, live)

    def test_args_change(self):
        desired = deployment()
        live = with_server_defaults(desired)
        live["spec"]["template"]["spec"]["containers"][0]["args"] = []
        assert has_object_changed(desired, live)

    def test_replicas_change(self):
        desired = deployment()
        live = with_server_defaults(desired)
        live["spec"]["replicas"] = 3
        assert has_object_changed(desired, live)

    def test_label_removed(self):
        desired = deployment()
        live = with_server_defaults(desired)
        del live["metadata"]["labels"]["app"]
        assert has_object_changed(desired, live)


class TestOtherKinds:
    """Tests for the remaining kind predicates."""

    def test_service_port_change(self):
        desired = {
            "kind": "Service",
            "metadata": {"labels": LABELS},
            "spec": {"ports": [{"port": 443, "targetPort": 10250}], "selector": {"app": "webhook"}},
        }
        live = copy.deepcopy(desired)
        live["spec"]["clusterIP"] = "10.0.0.1"
        assert not has_object_changed(desired, live)
        live["spec"]["ports"][0]["port"] = 8443
        assert has_object_changed(desired, live)

    def test_secret_data_is_not_compared(self):
        desired = {"kind": "Secret", "metadata": {"labels": LABELS}}
        live = {"kind": "Secret", "metadata": {"labels": LABELS}, "data": {"tls.crt": "abc"}}
        assert not has_object_changed(desired, live)

    def test_network_policy_empty_egress_list_matters(self):
        desired = {
            "kind": "NetworkPolicy",
            "metadata": {"labels": LABELS},
            "spec": {"podSelector": {}, "policyTypes": ["Ingress", "Egress"]},
        }
        live = copy.deepcopy(desired)
        live["spec"]["egress"] = [{}]
        assert has_object_changed(desired, live)

    def test_webhook_inject_annotation(self):
        desired = {
            "kind": "ValidatingWebhookConfiguration",
            "metadata": {
                "labels": LABELS,
                "annotations": {CERT_MANAGER_INJECT_CA_FROM_ANNOTATION: "external-secrets/external-secrets-webhook"},
            },
            "webhooks": [],
        }
        live = copy.deepcopy(desired)
        live["metadata"]["annotations"] = {}
        assert has_object_changed(desired, live)

    def test_kind_mismatch(self):
        with pytest.raises(ValueError, match="same kind"):
            has_object_changed({"kind": "Service"}, {"kind": "Secret"})

    def test_unsupported_kind(self):
        with pytest.raises(ValueError, match="unsupported object kind"):
            has_object_changed({"kind": "Pod"}, {"kind": "Pod"})
