"""Unit tests for builder.py - Desired state rendering."""

import pytest

from builder import (
    CERT_MANAGER_INJECT_CA_FROM_VALUE,
    DEFAULT_NAMESPACE,
    TRUSTED_CA_BUNDLE_CONFIGMAP,
    DesiredStateBuilder,
    DriftPolicy,
    filter_annotations,
    merge_labels,
    rewrite_dns_namespace,
)
from config import ImageConfig, ProxyConfig
from drift import CERT_MANAGER_INJECT_CA_FROM_ANNOTATION
from errors import ErrorReason, ReconcileError, is_irrecoverable_error
from fakes import api_error, cert_manager_spec, issuer, make_esc, make_esm


def by_kind_name(state):
    return {(d.kind, d.name): d for d in state.descriptors}


def deployment(state, name):
    return by_kind_name(state)[("Deployment", name)].object


def container(deployment_obj, name):
    for c in deployment_obj["spec"]["template"]["spec"]["containers"]:
        if c["name"] == name:
            return c
    raise AssertionError(f"container {name} not found")


def env_value(container_obj, name):
    for var in container_obj.get("env") or []:
        if var["name"] == name:
            return var.get("value")
    return None


@pytest.fixture
def builder(kube, no_capabilities, images):
    return DesiredStateBuilder(kube, no_capabilities, images)


@pytest.fixture
def cm_builder(kube, cert_manager_capabilities, images):
    return DesiredStateBuilder(kube, cert_manager_capabilities, images)


class TestLabelHelpers:
    """Tests for label and annotation merging."""

    def test_precedence(self):
        merged = merge_labels(
            {"team": "global", "tier": "global"},
            {"team": "config"},
            {"app": "external-secrets"},
        )
        assert merged == {"team": "config", "tier": "global", "app": "external-secrets"}

    def test_reserved_keys_dropped(self):
        merged = merge_labels(
            {"app": "mine", "app.kubernetes.io/name": "x", "external-secrets.io/foo": "y"},
            {"servicebinding.io/controller": "true", "ok": "1"},
            {},
        )
        assert merged == {"ok": "1"}

    def test_reserved_annotations_dropped(self):
        assert filter_annotations(
            {"kubernetes.io/description": "x", "openshift.io/a": "b", "example.com/c": "d"}
        ) == {"example.com/c": "d"}

    def test_rewrite_dns_namespace(self):
        assert rewrite_dns_namespace(
            ["external-secrets-webhook.old.svc", "single"], "new"
        ) == ["external-secrets-webhook.new.svc", "single"]


@pytest.mark.asyncio
class TestDefaultBuild:
    """Tests for a build with an empty configuration."""

    async def test_order_starts_with_namespace_and_ends_with_webhooks(self, builder):
        state = await builder.build(make_esc())
        kinds = [d.kind for d in state.descriptors]
        assert kinds[0] == "Namespace"
        assert kinds[-2:] == ["ValidatingWebhookConfiguration"] * 2
        assert kinds.index("Deployment") > kinds.index("Service")
        assert kinds.index("Service") > kinds.index("NetworkPolicy")
        assert kinds.index("ClusterRole") > kinds.index("ServiceAccount")

    async def test_namespace_is_create_only(self, builder):
        state = await builder.build(make_esc())
        ns = state.descriptors[0]
        assert ns.name == DEFAULT_NAMESPACE
        assert ns.policy == DriftPolicy.CREATE_ONLY
        assert ns.exists_ok

    async def test_cert_controller_rendered_without_cert_manager(self, builder):
        state = await builder.build(make_esc())
        index = by_kind_name(state)
        assert ("Deployment", "external-secrets-cert-controller") in index
        assert ("Secret", "external-secrets-webhook") in index
        assert ("Deployment", "bitwarden-sdk-server") not in index
        # Disabled plugin service account is removed
        assert index[("ServiceAccount", "bitwarden-sdk-server")].delete

    async def test_images_and_security_context(self, builder, images):
        state = await builder.build(make_esc())
        controller = container(deployment(state, "external-secrets"), "external-secrets")
        assert controller["image"] == images.external_secrets_image
        assert controller["securityContext"]["runAsNonRoot"] is True
        assert "--enable-cluster-store-reconciler=true" in controller["args"]
        assert "--loglevel=warn" in controller["args"]

    async def test_identity_labels_win(self, builder):
        esc = make_esc({"controllerConfig": {"labels": {"team": "a", "app": "hijack"}}})
        esm = make_esm({"globalConfig": {"labels": {"team": "b", "env": "prod"}}})
        state = await builder.build(esc, esm)
        labels = deployment(state, "external-secrets")["metadata"]["labels"]
        assert labels["app"] == "external-secrets"
        assert labels["team"] == "a"
        assert labels["env"] == "prod"
        assert labels["app.kubernetes.io/version"] == "v0.14.0"

    async def test_annotations_copied_to_objects(self, builder):
        esc = make_esc(
            {"controllerConfig": {"annotations": [{"key": "example.com/owner", "value": "me"}]}}
        )
        state = await builder.build(esc)
        dep = deployment(state, "external-secrets")
        assert dep["metadata"]["annotations"]["example.com/owner"] == "me"
        assert dep["spec"]["template"]["metadata"]["annotations"]["example.com/owner"] == "me"
        assert "annotations" not in state.descriptors[0].object["metadata"]

    async def test_annotations_present_when_rendered(self, builder):
        esc = make_esc(
            {
                "controllerConfig": {
                    "annotations": [{"key": "example.com/owner", "value": "me"}],
                    "networkPolicies": [
                        {"name": "allow-vault", "componentName": "ExternalSecretsCoreController"}
                    ],
                }
            }
        )
        state = await builder.build(esc)
        rendered = [d for d in state.descriptors[1:] if not d.delete]
        assert ("NetworkPolicy", "allow-vault") in by_kind_name(state)
        for d in rendered:
            assert d.object["metadata"]["annotations"]["example.com/owner"] == "me", d.name


@pytest.mark.asyncio
class TestOverlays:
    """Tests for scheduling, proxy and component overlays."""

    async def test_operating_namespace(self, builder):
        state = await builder.build(make_esc({"appConfig": {"operatingNamespace": "team-a"}}))
        args = container(deployment(state, "external-secrets"), "external-secrets")["args"]
        assert "--namespace=team-a" in args
        assert "--enable-cluster-store-reconciler=false" in args

    async def test_esc_overrides_global_config(self, builder):
        esc = make_esc({"appConfig": {"nodeSelector": {"node-role.kubernetes.io/infra": ""}}})
        esm = make_esm(
            {
                "globalConfig": {
                    "nodeSelector": {"zone": "a"},
                    "tolerations": [{"key": "infra", "operator": "Exists"}],
                }
            }
        )
        state = await builder.build(esc, esm)
        pod = deployment(state, "external-secrets")["spec"]["template"]["spec"]
        assert pod["nodeSelector"] == {"node-role.kubernetes.io/infra": ""}
        assert pod["tolerations"] == [{"key": "infra", "operator": "Exists"}]

    async def test_invalid_resources_irrecoverable(self, builder):
        esc = make_esc(
            {"appConfig": {"resources": {"limits": {"memory": "1Mi"}, "requests": {"memory": "1Gi"}}}}
        )
        with pytest.raises(ReconcileError) as exc_info:
            await builder.build(esc)
        assert exc_info.value.reason == ErrorReason.IRRECOVERABLE
        assert "failed to update resource requirements" in str(exc_info.value)

    async def test_proxy_from_environment(self, kube, no_capabilities, images):
        builder = DesiredStateBuilder(
            kube, no_capabilities, images, env_proxy=ProxyConfig(http_proxy="http://proxy:3128")
        )
        state = await builder.build(make_esc())
        controller = container(deployment(state, "external-secrets"), "external-secrets")
        assert env_value(controller, "HTTP_PROXY") == "http://proxy:3128"
        assert env_value(controller, "http_proxy") == "http://proxy:3128"
        assert ("ConfigMap", TRUSTED_CA_BUNDLE_CONFIGMAP) in by_kind_name(state)

    async def test_spec_proxy_wins_over_environment(self, kube, no_capabilities, images):
        builder = DesiredStateBuilder(
            kube, no_capabilities, images, env_proxy=ProxyConfig(http_proxy="http://env:1")
        )
        state = await builder.build(make_esc({"appConfig": {"proxy": {"httpProxy": "http://spec:2"}}}))
        controller = container(deployment(state, "external-secrets"), "external-secrets")
        assert env_value(controller, "HTTP_PROXY") == "http://spec:2"

    async def test_no_proxy_removes_proxy_env(self, builder):
        state = await builder.build(make_esc())
        controller = container(deployment(state, "external-secrets"), "external-secrets")
        assert env_value(controller, "HTTP_PROXY") is None
        assert ("ConfigMap", TRUSTED_CA_BUNDLE_CONFIGMAP) not in by_kind_name(state)

    async def test_component_config(self, builder):
        esc = make_esc(
            {
                "controllerConfig": {
                    "componentConfigs": [
                        {
                            "componentName": "ExternalSecretsCoreController",
                            "deploymentConfigs": {"revisionHistoryLimit": 2},
                            "overrideEnv": [{"name": "GOMAXPROCS", "value": "2"}],
                        }
                    ]
                }
            }
        )
        state = await builder.build(esc)
        dep = deployment(state, "external-secrets")
        assert dep["spec"]["revisionHistoryLimit"] == 2
        assert env_value(container(dep, "external-secrets"), "GOMAXPROCS") == "2"

    async def test_user_network_policy(self, builder):
        esc = make_esc(
            {
                "controllerConfig": {
                    "networkPolicies": [
                        {
                            "name": "allow-vault",
                            "componentName": "ExternalSecretsCoreController",
                            "egress": [{"ports": [{"port": 8200}]}],
                        }
                    ]
                }
            }
        )
        state = await builder.build(esc)
        policy = by_kind_name(state)[("NetworkPolicy", "allow-vault")].object
        assert policy["spec"]["podSelector"]["matchLabels"] == {
            "app.kubernetes.io/name": "external-secrets"
        }
        assert policy["spec"]["egress"] == [{"ports": [{"port": 8200}]}]

    async def test_unknown_network_policy_component(self, builder):
        esc = make_esc(
            {
                "controllerConfig": {
                    "networkPolicies": [{"name": "x", "componentName": "Webhook"}]
                }
            }
        )
        with pytest.raises(ReconcileError) as exc_info:
            await builder.build(esc)
        assert is_irrecoverable_error(exc_info.value)
        assert "unknown component name: Webhook" in str(exc_info.value)

    async def test_missing_image(self, kube, no_capabilities):
        builder = DesiredStateBuilder(kube, no_capabilities, ImageConfig())
        with pytest.raises(ReconcileError) as exc_info:
            await builder.build(make_esc())
        assert is_irrecoverable_error(exc_info.value)
        assert "environment variable" in str(exc_info.value)


@pytest.mark.asyncio
class TestCertManager:
    """Tests for cert-manager backed builds."""

    async def test_requires_capability(self, builder):
        with pytest.raises(ReconcileError) as exc_info:
            await builder.build(make_esc(cert_manager_spec()))
        assert is_irrecoverable_error(exc_info.value)
        assert "cert-manager is not installed" in str(exc_info.value)

    async def test_webhook_certificate(self, kube, cm_builder):
        kube.put(issuer())
        state = await cm_builder.build(make_esc(cert_manager_spec(certificateDuration="2160h")))
        index = by_kind_name(state)
        cert = index[("Certificate", "external-secrets-webhook")].object
        assert cert["spec"]["issuerRef"] == {
            "name": "external-secrets-issuer",
            "kind": "Issuer",
            "group": "cert-manager.io",
        }
        assert cert["spec"]["duration"] == "2160h"
        assert "external-secrets-webhook.external-secrets.svc" in cert["spec"]["dnsNames"]
        assert ("Deployment", "external-secrets-cert-controller") not in index
        assert ("Secret", "external-secrets-webhook") not in index
        assert index[("ServiceAccount", "external-secrets-cert-controller")].delete

    async def test_stale_bitwarden_certificate_deleted(self, kube, cm_builder):
        kube.put(issuer())
        state = await cm_builder.build(make_esc(cert_manager_spec()))
        assert by_kind_name(state)[("Certificate", "bitwarden-tls-certs")].delete

    async def test_missing_issuer_is_retryable(self, cm_builder):
        with pytest.raises(ReconcileError) as exc_info:
            await cm_builder.build(make_esc(cert_manager_spec()))
        assert not is_irrecoverable_error(exc_info.value)
        assert "failed to fetch issuer" in str(exc_info.value)

    async def test_issuer_forbidden_is_irrecoverable(self, kube, cm_builder):
        kube.fail("get", "Issuer", api_error(403, "Forbidden"))
        with pytest.raises(ReconcileError) as exc_info:
            await cm_builder.build(make_esc(cert_manager_spec()))
        assert is_irrecoverable_error(exc_info.value)

    async def test_cluster_issuer(self, kube, cm_builder):
        kube.put(
            {
                "apiVersion": "cert-manager.io/v1",
                "kind": "ClusterIssuer",
                "metadata": {"name": "ca"},
            }
        )
        state = await cm_builder.build(
            make_esc(cert_manager_spec(issuerRef={"name": "ca", "kind": "ClusterIssuer"}))
        )
        cert = by_kind_name(state)[("Certificate", "external-secrets-webhook")].object
        assert cert["spec"]["issuerRef"]["kind"] == "ClusterIssuer"

    async def test_missing_issuer_name(self, cm_builder):
        with pytest.raises(ReconcileError) as exc_info:
            await cm_builder.build(make_esc(cert_manager_spec(issuerRef={"name": ""})))
        assert is_irrecoverable_error(exc_info.value)

    async def test_inject_annotation_on_webhooks(self, kube, cm_builder):
        kube.put(issuer())
        state = await cm_builder.build(make_esc(cert_manager_spec(injectAnnotations="true")))
        for d in state.descriptors:
            if d.kind == "ValidatingWebhookConfiguration":
                annotations = d.object["metadata"]["annotations"]
                assert annotations[CERT_MANAGER_INJECT_CA_FROM_ANNOTATION] == (
                    CERT_MANAGER_INJECT_CA_FROM_VALUE
                )

    async def test_webhook_mounts_cert_manager_secret(self, kube, cm_builder):
        kube.put(issuer())
        state = await cm_builder.build(make_esc(cert_manager_spec()))
        volumes = deployment(state, "external-secrets-webhook")["spec"]["template"]["spec"]["volumes"]
        certs = [v for v in volumes if v["name"] == "certs"]
        assert certs[0]["secret"]["secretName"] == "external-secrets-webhook"


@pytest.mark.asyncio
class TestBitwarden:
    """Tests for the bitwarden plugin."""

    async def test_requires_secret_or_cert_manager(self, builder):
        esc = make_esc({"plugins": {"bitwardenSecretManagerProvider": {"mode": "Enabled"}}})
        with pytest.raises(ReconcileError) as exc_info:
            await builder.build(esc)
        assert is_irrecoverable_error(exc_info.value)
        assert "either secretRef or certManagerConfig" in str(exc_info.value)

    async def test_secret_ref(self, kube, builder, images):
        kube.put(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": "bw-tls", "namespace": "external-secrets"},
            }
        )
        esc = make_esc(
            {
                "plugins": {
                    "bitwardenSecretManagerProvider": {
                        "mode": "Enabled",
                        "secretRef": {"name": "bw-tls"},
                    }
                }
            }
        )
        state = await builder.build(esc)
        dep = deployment(state, "bitwarden-sdk-server")
        assert container(dep, "bitwarden-sdk-server")["image"] == images.bitwarden_sdk_server_image
        assert dep["metadata"]["labels"]["app.kubernetes.io/version"] == "v0.4.0"
        volumes = dep["spec"]["template"]["spec"]["volumes"]
        assert {"name": "bitwarden-tls-certs", "secret": {"secretName": "bw-tls"}} in [
            {"name": v["name"], "secret": {"secretName": v["secret"]["secretName"]}}
            for v in volumes
            if "secret" in v
        ]

    async def test_missing_secret_is_retryable(self, builder):
        esc = make_esc(
            {
                "plugins": {
                    "bitwardenSecretManagerProvider": {
                        "mode": "Enabled",
                        "secretRef": {"name": "bw-tls"},
                    }
                }
            }
        )
        with pytest.raises(ReconcileError) as exc_info:
            await builder.build(esc)
        assert not is_irrecoverable_error(exc_info.value)

    async def test_certificate_from_cert_manager(self, kube, cm_builder):
        kube.put(issuer())
        spec = cert_manager_spec()
        spec["plugins"] = {"bitwardenSecretManagerProvider": {"mode": "Enabled"}}
        state = await cm_builder.build(make_esc(spec))
        index = by_kind_name(state)
        assert not index[("Certificate", "bitwarden-tls-certs")].delete
        assert ("Deployment", "bitwarden-sdk-server") in index
