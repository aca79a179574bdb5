"""
Desired State Builder - Turns the operator's custom resources into an
ordered list of resource descriptors.

Each reconcile pass merges three configuration layers (the
ExternalSecretsManager global config, the ExternalSecretsConfig spec and
the operand image references from the process environment), renders
every bundled template that the merged configuration enables, and
returns the descriptors in dependency order: namespace, service
accounts, certificates, secrets, RBAC, network policies, services,
deployments and validating webhooks.

Nothing is written to the cluster here. The only cluster reads are the
existence checks for referenced cert-manager issuers and secrets.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from kubernetes_asyncio.client.exceptions import ApiException

import bindata
import drift
from capabilities import CERTIFICATE_CAPABILITY, CapabilityRegistry
from config import (
    BITWARDEN_SDK_SERVER_IMAGE_ENV,
    EXTERNAL_SECRETS_IMAGE_ENV,
    ImageConfig,
    ProxyConfig as EnvProxyConfig,
)
from errors import (
    ReconcileError,
    from_client_error,
    new_irrecoverable_error,
)
from kube import kind_spec
from models import (
    ComponentName,
    ExternalSecretsConfigSpec,
    GlobalConfig,
    ProxyConfig,
    esc_spec,
    esm_spec,
)
from validation import (
    validate_affinity,
    validate_node_selector,
    validate_resource_requirements,
    validate_tolerations,
)

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "external-secrets"
OPERATOR_NAME = "external-secrets-operator"

# Template names, relative to the bindata package
NAMESPACE_ASSET = "external-secrets/external-secrets-namespace.yaml"
BITWARDEN_CERTIFICATE_ASSET = "external-secrets/certificate_bitwarden-tls-certs.yml"
_RESOURCES = "external-secrets/resources/"
WEBHOOK_CERTIFICATE_ASSET = _RESOURCES + "certificate_external-secrets-webhook.yml"
CERT_CONTROLLER_CLUSTER_ROLE_ASSET = _RESOURCES + "clusterrole_external-secrets-cert-controller.yml"
CONTROLLER_CLUSTER_ROLE_ASSET = _RESOURCES + "clusterrole_external-secrets-controller.yml"
CONTROLLER_CLUSTER_ROLE_EDIT_ASSET = _RESOURCES + "clusterrole_external-secrets-edit.yml"
CONTROLLER_CLUSTER_ROLE_SERVICE_BINDINGS_ASSET = (
    _RESOURCES + "clusterrole_external-secrets-servicebindings.yml"
)
CONTROLLER_CLUSTER_ROLE_VIEW_ASSET = _RESOURCES + "clusterrole_external-secrets-view.yml"
CERT_CONTROLLER_CLUSTER_ROLE_BINDING_ASSET = (
    _RESOURCES + "clusterrolebinding_external-secrets-cert-controller.yml"
)
CONTROLLER_CLUSTER_ROLE_BINDING_ASSET = (
    _RESOURCES + "clusterrolebinding_external-secrets-controller.yml"
)
BITWARDEN_DEPLOYMENT_ASSET = _RESOURCES + "deployment_bitwarden-sdk-server.yml"
CONTROLLER_DEPLOYMENT_ASSET = _RESOURCES + "deployment_external-secrets.yml"
CERT_CONTROLLER_DEPLOYMENT_ASSET = _RESOURCES + "deployment_external-secrets-cert-controller.yml"
WEBHOOK_DEPLOYMENT_ASSET = _RESOURCES + "deployment_external-secrets-webhook.yml"
LEADER_ELECTION_ROLE_ASSET = _RESOURCES + "role_external-secrets-leaderelection.yml"
LEADER_ELECTION_ROLE_BINDING_ASSET = _RESOURCES + "rolebinding_external-secrets-leaderelection.yml"
WEBHOOK_TLS_SECRET_ASSET = _RESOURCES + "secret_external-secrets-webhook.yml"
BITWARDEN_SERVICE_ASSET = _RESOURCES + "service_bitwarden-sdk-server.yml"
WEBHOOK_SERVICE_ASSET = _RESOURCES + "service_external-secrets-webhook.yml"
METRICS_SERVICE_ASSET = _RESOURCES + "service_external-secrets-metrics.yml"
CERT_CONTROLLER_METRICS_SERVICE_ASSET = (
    _RESOURCES + "service_external-secrets-cert-controller-metrics.yml"
)
CONTROLLER_SERVICE_ACCOUNT_ASSET = _RESOURCES + "serviceaccount_external-secrets.yml"
BITWARDEN_SERVICE_ACCOUNT_ASSET = _RESOURCES + "serviceaccount_bitwarden-sdk-server.yml"
CERT_CONTROLLER_SERVICE_ACCOUNT_ASSET = (
    _RESOURCES + "serviceaccount_external-secrets-cert-controller.yml"
)
WEBHOOK_SERVICE_ACCOUNT_ASSET = _RESOURCES + "serviceaccount_external-secrets-webhook.yml"
EXTERNAL_SECRET_WEBHOOK_ASSET = (
    _RESOURCES + "validatingwebhookconfiguration_externalsecret-validate.yml"
)
SECRET_STORE_WEBHOOK_ASSET = _RESOURCES + "validatingwebhookconfiguration_secretstore-validate.yml"
DENY_ALL_NETWORK_POLICY_ASSET = _RESOURCES + "networkpolicy_deny-all-traffic.yml"
MAIN_CONTROLLER_NETWORK_POLICY_ASSET = (
    _RESOURCES + "networkpolicy_allow-api-server-egress-for-main-controller.yml"
)
WEBHOOK_NETWORK_POLICY_ASSET = _RESOURCES + "networkpolicy_allow-api-server-and-webhook-traffic.yml"
CERT_CONTROLLER_NETWORK_POLICY_ASSET = (
    _RESOURCES + "networkpolicy_allow-api-server-egress-for-cert-controller.yml"
)
BITWARDEN_NETWORK_POLICY_ASSET = (
    _RESOURCES + "networkpolicy_allow-api-server-egress-for-bitwarden-server.yml"
)
DNS_NETWORK_POLICY_ASSET = _RESOURCES + "networkpolicy_allow-to-dns.yml"

DEPLOYMENT_COMPONENTS = {
    CONTROLLER_DEPLOYMENT_ASSET: ComponentName.CORE_CONTROLLER,
    WEBHOOK_DEPLOYMENT_ASSET: ComponentName.WEBHOOK,
    CERT_CONTROLLER_DEPLOYMENT_ASSET: ComponentName.CERT_CONTROLLER,
    BITWARDEN_DEPLOYMENT_ASSET: ComponentName.BITWARDEN_SDK_SERVER,
}

# User labels must not touch keys the operator or the operand rely on.
DISALLOWED_LABEL_RE = re.compile(
    r"^app.kubernetes.io\/|^external-secrets.io\/|^rbac.authorization.k8s.io\/"
    r"|^servicebinding.io\/controller$|^app$"
)
RESERVED_ANNOTATION_PREFIXES = ("kubernetes.io/", "app.kubernetes.io/", "openshift.io/", "k8s.io/")

PROCESSED_ANNOTATION = "operator.openshift.io/external-secrets-processed"

CERT_MANAGER_INJECT_CA_FROM_VALUE = "external-secrets/external-secrets-webhook"
CERT_MANAGER_WEBHOOK_SECRET = "external-secrets-webhook"
DEFAULT_ISSUER_KIND = "Issuer"
CLUSTER_ISSUER_KIND = "ClusterIssuer"
DEFAULT_ISSUER_GROUP = "cert-manager.io"

TRUSTED_CA_BUNDLE_CONFIGMAP = "external-secrets-trusted-ca-bundle"
TRUSTED_CA_BUNDLE_VOLUME = "trusted-ca-bundle"
TRUSTED_CA_BUNDLE_MOUNT_PATH = "/etc/pki/tls/certs"
TRUSTED_CA_BUNDLE_INJECT_LABEL = "config.openshift.io/inject-trusted-cabundle"

PROXY_ENV_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY")
ALL_PROXY_ENV_VARS = frozenset(PROXY_ENV_VARS + tuple(v.lower() for v in PROXY_ENV_VARS))

DEFAULT_CHECK_INTERVAL = "5m"

# Pod selectors for user-declared network policies
COMPONENT_POD_SELECTORS = {
    ComponentName.CORE_CONTROLLER.value: {"app.kubernetes.io/name": "external-secrets"},
    ComponentName.BITWARDEN_SDK_SERVER.value: {"app.kubernetes.io/name": "bitwarden-sdk-server"},
}

_LOG_LEVELS = {0: "info", 1: "warn", 2: "error", 4: "debug", 5: "debug"}


def identity_labels(version: str) -> Dict[str, str]:
    """Labels every managed object carries; they always win a merge."""
    return {
        "app": "external-secrets",
        "app.kubernetes.io/version": version,
        "app.kubernetes.io/managed-by": OPERATOR_NAME,
        "app.kubernetes.io/part-of": OPERATOR_NAME,
    }


def filter_labels(labels: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Drop user labels whose keys are reserved."""
    kept = {}
    for key, value in (labels or {}).items():
        if DISALLOWED_LABEL_RE.search(key):
            logger.debug(f"Skipping reserved label {key}")
            continue
        kept[key] = value
    return kept


def merge_labels(
    global_labels: Optional[Dict[str, str]],
    resource_labels: Optional[Dict[str, str]],
    identity: Dict[str, str],
) -> Dict[str, str]:
    """
    Merge label layers, lowest precedence first.

    Global config labels are overridden by the config resource's own
    labels, and both are overridden by the operator's identity labels.
    Reserved keys are removed from the user layers before merging.
    """
    merged: Dict[str, str] = {}
    merged.update(filter_labels(global_labels))
    merged.update(filter_labels(resource_labels))
    merged.update(identity)
    return merged


def filter_annotations(annotations: Dict[str, str]) -> Dict[str, str]:
    """Drop user annotations under reserved prefixes."""
    kept = {}
    for key, value in annotations.items():
        if key.startswith(RESERVED_ANNOTATION_PREFIXES):
            logger.debug(f"Skipping reserved annotation {key}")
            continue
        kept[key] = value
    return kept


def log_level_name(level: int) -> str:
    return _LOG_LEVELS.get(level, "info")


def rewrite_dns_namespace(dns_names: List[str], namespace: str) -> List[str]:
    """Replace the second label of each DNS name with ``namespace``."""
    updated = []
    for name in dns_names:
        parts = name.split(".")
        if len(parts) >= 2:
            parts[1] = namespace
        updated.append(".".join(parts))
    return updated


class DriftPolicy(Enum):
    """How the driver decides whether a live object needs an update."""

    FULL = "full"
    METADATA_ONLY = "metadata-only"
    CREATE_ONLY = "create-only"


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    One target object of a reconcile pass.

    ``object`` is the fully rendered desired object. Delete descriptors
    carry no object and name something that must not exist.
    """

    kind: str
    name: str
    namespace: Optional[str]
    description: str
    object: Optional[Dict[str, Any]] = field(default=None, compare=False)
    policy: DriftPolicy = DriftPolicy.FULL
    delete: bool = False
    # Creation races with another writer are success, e.g. the namespace
    exists_ok: bool = False

    @property
    def display_name(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    def has_changed(self, live: Dict[str, Any]) -> bool:
        """Apply this descriptor's drift policy to a live object."""
        if self.policy == DriftPolicy.CREATE_ONLY or self.object is None:
            return False
        if self.policy == DriftPolicy.METADATA_ONLY:
            return drift.object_metadata_modified(self.object, live)
        return drift.has_object_changed(self.object, live)

    def update_target(self, live: Dict[str, Any]) -> Dict[str, Any]:
        """
        Object to write when ``live`` has drifted.

        Metadata-only kinds keep the live payload, since their data is
        filled in by other actors, and only take the desired metadata.
        """
        if self.policy != DriftPolicy.METADATA_ONLY:
            return self.object
        target = copy.deepcopy(live)
        metadata = target.setdefault("metadata", {})
        desired = self.object.get("metadata") or {}
        metadata["labels"] = dict(desired.get("labels") or {})
        if desired.get("annotations"):
            metadata["annotations"] = {
                **(metadata.get("annotations") or {}),
                **desired["annotations"],
            }
        return target

    @classmethod
    def for_object(
        cls,
        obj: Dict[str, Any],
        description: str,
        policy: DriftPolicy = DriftPolicy.FULL,
        exists_ok: bool = False,
    ) -> "ResourceDescriptor":
        metadata = obj.get("metadata") or {}
        return cls(
            kind=obj["kind"],
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or None,
            description=description,
            object=obj,
            policy=policy,
            exists_ok=exists_ok,
        )

    @classmethod
    def for_deletion(
        cls, kind: str, name: str, namespace: Optional[str], description: str
    ) -> "ResourceDescriptor":
        return cls(kind=kind, name=name, namespace=namespace, description=description, delete=True)


@dataclass
class DesiredConfig:
    """
    Merged view of the configuration for one pass.

    Values set on the ExternalSecretsConfig win over the
    ExternalSecretsManager global config. The proxy falls back to the
    operator's own environment last.
    """

    name: str
    spec: ExternalSecretsConfigSpec
    global_config: Optional[GlobalConfig]
    images: ImageConfig
    namespace: str = DEFAULT_NAMESPACE
    env_proxy: Optional[EnvProxyConfig] = None

    @classmethod
    def resolve(
        cls,
        esc: Dict[str, Any],
        esm: Optional[Dict[str, Any]],
        images: ImageConfig,
        env_proxy: Optional[EnvProxyConfig] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> "DesiredConfig":
        return cls(
            name=(esc.get("metadata") or {}).get("name", ""),
            spec=esc_spec(esc),
            global_config=esm_spec(esm).global_config,
            images=images,
            namespace=namespace,
            env_proxy=env_proxy,
        )

    def _pick(self, attr: str) -> Any:
        value = getattr(self.spec.app_config, attr)
        if value is not None:
            return value
        if self.global_config is not None:
            return getattr(self.global_config, attr)
        return None

    @property
    def log_level(self) -> str:
        level = 1
        if self.spec.app_config.log_level:
            level = self.spec.app_config.log_level
        elif self.global_config is not None and self.global_config.log_level:
            level = self.global_config.log_level
        return log_level_name(level)

    @property
    def resources(self) -> Optional[Dict[str, Any]]:
        return self._pick("resources")

    @property
    def affinity(self) -> Optional[Dict[str, Any]]:
        return self._pick("affinity")

    @property
    def tolerations(self) -> Optional[List[Dict[str, Any]]]:
        return self._pick("tolerations")

    @property
    def node_selector(self) -> Optional[Dict[str, str]]:
        return self._pick("node_selector")

    @property
    def proxy(self) -> Optional[ProxyConfig]:
        """Proxy settings for the operand, None when no layer sets one."""
        proxy = self._pick("proxy")
        if proxy is not None:
            return proxy
        if self.env_proxy is not None and self.env_proxy.is_set():
            return ProxyConfig(
                httpProxy=self.env_proxy.http_proxy,
                httpsProxy=self.env_proxy.https_proxy,
                noProxy=self.env_proxy.no_proxy,
            )
        return None

    @property
    def labels(self) -> Dict[str, str]:
        global_labels = self.global_config.labels if self.global_config else {}
        return merge_labels(
            global_labels,
            self.spec.controller_config.labels,
            identity_labels(self.images.external_secrets_version),
        )

    @property
    def annotations(self) -> Dict[str, str]:
        return filter_annotations(
            {a.key: a.value for a in self.spec.controller_config.annotations}
        )


@dataclass
class DesiredState:
    """Output of a build: descriptors in apply order plus merged metadata."""

    config: DesiredConfig
    descriptors: List[ResourceDescriptor]
    labels: Dict[str, str]
    annotations: Dict[str, str]


class DesiredStateBuilder:
    """
    Renders descriptors for an ExternalSecretsConfig.

    The capability registry decides whether cert-manager backed
    descriptors can be produced at all. The kube client is only used
    for read-only lookups.
    """

    def __init__(
        self,
        kube,
        capabilities: CapabilityRegistry,
        images: ImageConfig,
        env_proxy: Optional[EnvProxyConfig] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ):
        self.kube = kube
        self.capabilities = capabilities
        self.images = images
        self.env_proxy = env_proxy
        self.namespace = namespace

    async def build(
        self, esc: Dict[str, Any], esm: Optional[Dict[str, Any]] = None
    ) -> DesiredState:
        """
        Build the ordered descriptor list for one pass.

        Args:
            esc: The ExternalSecretsConfig object.
            esm: The ExternalSecretsManager object, if one exists.

        Returns:
            The DesiredState for this pass.

        Raises:
            ReconcileError: When the configuration cannot be rendered.
        """
        cfg = DesiredConfig.resolve(esc, esm, self.images, self.env_proxy, self.namespace)
        self.validate(cfg)

        labels = cfg.labels
        annotations = cfg.annotations
        descriptors: List[ResourceDescriptor] = [self._namespace()]
        descriptors.extend(self._service_accounts(cfg, labels))
        descriptors.extend(await self._certificates(cfg, labels))
        descriptors.extend(self._secrets(cfg, labels))
        descriptors.extend(self._rbac(cfg, labels))
        descriptors.extend(self._network_policies(cfg, labels))
        descriptors.extend(self._services(cfg, labels))
        descriptors.extend(self._deployments(cfg, labels, annotations))
        descriptors.extend(self._validating_webhooks(cfg, labels))

        logger.debug(f"Built {len(descriptors)} descriptors for {cfg.name}")
        return DesiredState(cfg, descriptors, labels, annotations)

    def validate(self, cfg: DesiredConfig) -> None:
        """Reject configurations that need a capability the cluster lacks."""
        if cfg.spec.cert_manager_enabled and not self.capabilities.has(CERTIFICATE_CAPABILITY):
            raise new_irrecoverable_error(
                ValueError(
                    "spec.controllerConfig.certProvider.certManager.mode is set, but "
                    f"cert-manager is not installed ({CERTIFICATE_CAPABILITY} not found)"
                ),
                "%s configuration validation failed",
                cfg.name,
            )

    # Rendering helpers

    def _render(
        self,
        asset_name: str,
        labels: Dict[str, str],
        annotations: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Decode a template, move it to the operand namespace, label and annotate it."""
        obj = bindata.decode(asset_name)
        metadata = obj.setdefault("metadata", {})
        if kind_spec(obj["kind"]).namespaced:
            metadata["namespace"] = self.namespace
        metadata["labels"] = {**(metadata.get("labels") or {}), **labels}
        if annotations:
            _set_annotations(obj, annotations)
        return obj

    def _namespace(self) -> ResourceDescriptor:
        obj = bindata.decode(NAMESPACE_ASSET)
        obj["metadata"]["name"] = self.namespace
        return ResourceDescriptor.for_object(
            obj, "namespace", policy=DriftPolicy.CREATE_ONLY, exists_ok=True
        )

    def _service_accounts(
        self, cfg: DesiredConfig, labels: Dict[str, str]
    ) -> List[ResourceDescriptor]:
        wanted = [
            (CONTROLLER_SERVICE_ACCOUNT_ASSET, True),
            (WEBHOOK_SERVICE_ACCOUNT_ASSET, True),
            (CERT_CONTROLLER_SERVICE_ACCOUNT_ASSET, not cfg.spec.cert_manager_enabled),
            (BITWARDEN_SERVICE_ACCOUNT_ASSET, cfg.spec.bitwarden_enabled),
        ]
        descriptors = []
        for asset_name, enabled in wanted:
            obj = self._render(asset_name, labels, cfg.annotations)
            if enabled:
                descriptors.append(
                    ResourceDescriptor.for_object(
                        obj, "serviceaccount", policy=DriftPolicy.CREATE_ONLY
                    )
                )
            else:
                descriptors.append(
                    ResourceDescriptor.for_deletion(
                        "ServiceAccount",
                        obj["metadata"]["name"],
                        self.namespace,
                        "serviceaccount",
                    )
                )
        return descriptors

    async def _certificates(
        self, cfg: DesiredConfig, labels: Dict[str, str]
    ) -> List[ResourceDescriptor]:
        descriptors = []
        if cfg.spec.cert_manager_enabled:
            descriptors.append(
                await self._certificate(cfg, WEBHOOK_CERTIFICATE_ASSET, labels)
            )

        if cfg.spec.bitwarden_enabled:
            secret_ref = cfg.spec.bitwarden.secret_ref
            if secret_ref is not None and secret_ref.name:
                await self._assert_secret_exists(secret_ref.name)
            elif not cfg.spec.cert_manager_enabled:
                raise new_irrecoverable_error(
                    ValueError("invalid bitwardenSecretManagerProvider config"),
                    "either secretRef or certManagerConfig must be configured, "
                    "when bitwardenSecretManagerProvider is enabled",
                )
            else:
                descriptors.append(
                    await self._certificate(cfg, BITWARDEN_CERTIFICATE_ASSET, labels)
                )
        elif self.capabilities.cert_manager_installed:
            # The plugin certificate may remain from when the plugin was enabled
            name = bindata.decode(BITWARDEN_CERTIFICATE_ASSET)["metadata"]["name"]
            descriptors.append(
                ResourceDescriptor.for_deletion("Certificate", name, self.namespace, "certificate")
            )
        return descriptors

    async def _certificate(
        self, cfg: DesiredConfig, asset_name: str, labels: Dict[str, str]
    ) -> ResourceDescriptor:
        certificate = self._render(asset_name, labels, cfg.annotations)
        try:
            await self._update_certificate_params(cfg, certificate)
        except ReconcileError as e:
            raise from_client_error(
                e, "failed to update certificate resource for %s/%s deployment",
                self.namespace, cfg.name,
            )
        except ValueError as e:
            raise new_irrecoverable_error(
                e, "failed to update certificate resource for %s/%s deployment",
                self.namespace, cfg.name,
            )
        return ResourceDescriptor.for_object(certificate, "certificate")

    async def _update_certificate_params(
        self, cfg: DesiredConfig, certificate: Dict[str, Any]
    ) -> None:
        cert_manager = cfg.spec.cert_manager
        issuer_ref = cert_manager.issuer_ref if cert_manager else None
        if issuer_ref is None:
            raise ValueError("cert-manager is enabled but issuerRef is not configured")
        if not issuer_ref.name:
            raise ValueError("cert-manager.issuerRef.name is not configured")

        spec = certificate.setdefault("spec", {})
        spec["issuerRef"] = {
            "name": issuer_ref.name,
            "kind": issuer_ref.kind or DEFAULT_ISSUER_KIND,
            "group": issuer_ref.group or DEFAULT_ISSUER_GROUP,
        }
        await self._assert_issuer_exists(spec["issuerRef"])

        spec["dnsNames"] = rewrite_dns_namespace(spec.get("dnsNames") or [], self.namespace)
        if cert_manager.certificate_renew_before:
            spec["renewBefore"] = cert_manager.certificate_renew_before
        if cert_manager.certificate_duration:
            spec["duration"] = cert_manager.certificate_duration

    async def _assert_issuer_exists(self, issuer_ref: Dict[str, str]) -> None:
        kind = issuer_ref["kind"]
        if issuer_ref["group"] != DEFAULT_ISSUER_GROUP or kind not in (
            DEFAULT_ISSUER_KIND, CLUSTER_ISSUER_KIND,
        ):
            logger.debug(f"Not checking external issuer {kind}.{issuer_ref['group']}")
            return
        namespace = self.namespace if kind == DEFAULT_ISSUER_KIND else None
        try:
            await self.kube.get(kind, issuer_ref["name"], namespace)
        except ApiException as e:
            name = f"{namespace}/{issuer_ref['name']}" if namespace else issuer_ref["name"]
            raise from_client_error(e, "failed to fetch %s %r", kind.lower(), name)

    async def _assert_secret_exists(self, name: str) -> None:
        try:
            await self.kube.get("Secret", name, self.namespace)
        except ApiException as e:
            raise from_client_error(e, "failed to fetch %r secret", f"{self.namespace}/{name}")

    def _secrets(self, cfg: DesiredConfig, labels: Dict[str, str]) -> List[ResourceDescriptor]:
        descriptors = []
        if not cfg.spec.cert_manager_enabled:
            descriptors.append(
                ResourceDescriptor.for_object(
                    self._render(WEBHOOK_TLS_SECRET_ASSET, labels, cfg.annotations),
                    "secret",
                    policy=DriftPolicy.METADATA_ONLY,
                )
            )
        if cfg.proxy is not None:
            configmap = {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": TRUSTED_CA_BUNDLE_CONFIGMAP,
                    "namespace": self.namespace,
                    "labels": {**labels, TRUSTED_CA_BUNDLE_INJECT_LABEL: "true"},
                },
            }
            if cfg.annotations:
                _set_annotations(configmap, cfg.annotations)
            descriptors.append(
                ResourceDescriptor.for_object(
                    configmap, "trusted CA bundle configmap", policy=DriftPolicy.METADATA_ONLY
                )
            )
        return descriptors

    def _rbac(self, cfg: DesiredConfig, labels: Dict[str, str]) -> List[ResourceDescriptor]:
        descriptors = []
        for asset_name in (
            CONTROLLER_CLUSTER_ROLE_ASSET,
            CONTROLLER_CLUSTER_ROLE_EDIT_ASSET,
            CONTROLLER_CLUSTER_ROLE_SERVICE_BINDINGS_ASSET,
            CONTROLLER_CLUSTER_ROLE_VIEW_ASSET,
        ):
            descriptors.append(
                ResourceDescriptor.for_object(
                    self._render(asset_name, labels, cfg.annotations), "clusterrole"
                )
            )

        cluster_role = bindata.decode(CONTROLLER_CLUSTER_ROLE_ASSET)["metadata"]["name"]
        descriptors.append(
            ResourceDescriptor.for_object(
                self._binding(
                    CONTROLLER_CLUSTER_ROLE_BINDING_ASSET, cluster_role, labels, cfg.annotations
                ),
                "clusterrolebinding",
            )
        )

        role = self._render(LEADER_ELECTION_ROLE_ASSET, labels, cfg.annotations)
        descriptors.append(ResourceDescriptor.for_object(role, "role"))
        descriptors.append(
            ResourceDescriptor.for_object(
                self._binding(
                    LEADER_ELECTION_ROLE_BINDING_ASSET,
                    role["metadata"]["name"],
                    labels,
                    cfg.annotations,
                ),
                "rolebinding",
            )
        )

        if not cfg.spec.cert_manager_enabled:
            cert_role = self._render(CERT_CONTROLLER_CLUSTER_ROLE_ASSET, labels, cfg.annotations)
            descriptors.append(ResourceDescriptor.for_object(cert_role, "clusterrole"))
            descriptors.append(
                ResourceDescriptor.for_object(
                    self._binding(
                        CERT_CONTROLLER_CLUSTER_ROLE_BINDING_ASSET,
                        cert_role["metadata"]["name"],
                        labels,
                        cfg.annotations,
                    ),
                    "clusterrolebinding",
                )
            )
        return descriptors

    def _binding(
        self,
        asset_name: str,
        role_name: str,
        labels: Dict[str, str],
        annotations: Dict[str, str],
    ) -> Dict[str, Any]:
        """Render a (Cluster)RoleBinding pointing its ServiceAccounts at the operand namespace."""
        binding = self._render(asset_name, labels, annotations)
        binding.setdefault("roleRef", {})["name"] = role_name
        for subject in binding.get("subjects") or []:
            if subject.get("kind") == "ServiceAccount":
                subject["namespace"] = self.namespace
        return binding

    def _network_policies(
        self, cfg: DesiredConfig, labels: Dict[str, str]
    ) -> List[ResourceDescriptor]:
        static = [
            (DENY_ALL_NETWORK_POLICY_ASSET, True),
            (MAIN_CONTROLLER_NETWORK_POLICY_ASSET, True),
            (WEBHOOK_NETWORK_POLICY_ASSET, True),
            (CERT_CONTROLLER_NETWORK_POLICY_ASSET, not cfg.spec.cert_manager_enabled),
            (BITWARDEN_NETWORK_POLICY_ASSET, cfg.spec.bitwarden_enabled),
            (DNS_NETWORK_POLICY_ASSET, True),
        ]
        descriptors = [
            ResourceDescriptor.for_object(
                self._render(asset_name, labels, cfg.annotations), "network policy"
            )
            for asset_name, enabled in static
            if enabled
        ]

        for policy in cfg.spec.controller_config.network_policies:
            selector = COMPONENT_POD_SELECTORS.get(policy.component_name)
            if selector is None:
                raise new_irrecoverable_error(
                    ValueError(f"unknown component name: {policy.component_name}"),
                    "failed to determine pod selector for network policy %s",
                    policy.name,
                )
            obj = {
                "apiVersion": "networking.k8s.io/v1",
                "kind": "NetworkPolicy",
                "metadata": {
                    "name": policy.name,
                    "namespace": self.namespace,
                    "labels": dict(labels),
                },
                "spec": {
                    "podSelector": {"matchLabels": dict(selector)},
                    "policyTypes": ["Egress"],
                    "egress": copy.deepcopy(policy.egress),
                },
            }
            if cfg.annotations:
                _set_annotations(obj, cfg.annotations)
            descriptors.append(ResourceDescriptor.for_object(obj, "network policy"))
        return descriptors

    def _services(self, cfg: DesiredConfig, labels: Dict[str, str]) -> List[ResourceDescriptor]:
        wanted = [
            (WEBHOOK_SERVICE_ASSET, True),
            (METRICS_SERVICE_ASSET, True),
            (CERT_CONTROLLER_METRICS_SERVICE_ASSET, not cfg.spec.cert_manager_enabled),
            (BITWARDEN_SERVICE_ASSET, cfg.spec.bitwarden_enabled),
        ]
        return [
            ResourceDescriptor.for_object(
                self._render(asset_name, labels, cfg.annotations), "service"
            )
            for asset_name, enabled in wanted
            if enabled
        ]

    def _deployments(
        self, cfg: DesiredConfig, labels: Dict[str, str], annotations: Dict[str, str]
    ) -> List[ResourceDescriptor]:
        wanted = [
            (CONTROLLER_DEPLOYMENT_ASSET, True),
            (WEBHOOK_DEPLOYMENT_ASSET, True),
            (CERT_CONTROLLER_DEPLOYMENT_ASSET, not cfg.spec.cert_manager_enabled),
            (BITWARDEN_DEPLOYMENT_ASSET, cfg.spec.bitwarden_enabled),
        ]
        return [
            ResourceDescriptor.for_object(
                self.render_deployment(asset_name, cfg, labels, annotations), "deployment"
            )
            for asset_name, enabled in wanted
            if enabled
        ]

    def _validating_webhooks(
        self, cfg: DesiredConfig, labels: Dict[str, str]
    ) -> List[ResourceDescriptor]:
        descriptors = []
        for asset_name in (EXTERNAL_SECRET_WEBHOOK_ASSET, SECRET_STORE_WEBHOOK_ASSET):
            webhook = self._render(asset_name, labels, cfg.annotations)
            for entry in webhook.get("webhooks") or []:
                service = (entry.get("clientConfig") or {}).get("service")
                if service is not None:
                    service["namespace"] = self.namespace
            if cfg.spec.inject_annotations_enabled:
                webhook["metadata"].setdefault("annotations", {})[
                    drift.CERT_MANAGER_INJECT_CA_FROM_ANNOTATION
                ] = CERT_MANAGER_INJECT_CA_FROM_VALUE
            descriptors.append(ResourceDescriptor.for_object(webhook, "validating webhook"))
        return descriptors

    # Deployments

    def render_deployment(
        self,
        asset_name: str,
        cfg: DesiredConfig,
        labels: Dict[str, str],
        annotations: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Render one operand deployment with every configured overlay.

        Raises:
            ReconcileError: When an image is missing or an overlay is invalid.
        """
        deployment = self._render(asset_name, labels, cfg.annotations)
        name = deployment["metadata"]["name"]
        template = deployment["spec"].setdefault("template", {})
        template_metadata = template.setdefault("metadata", {})
        template_metadata["labels"] = {**(template_metadata.get("labels") or {}), **labels}
        if annotations:
            template_metadata["annotations"] = {
                **(template_metadata.get("annotations") or {}),
                **annotations,
            }

        if not cfg.images.external_secrets_image:
            raise new_irrecoverable_error(
                ValueError(
                    f"{EXTERNAL_SECRETS_IMAGE_ENV} environment variable with "
                    "externalsecrets image not set"
                ),
                "failed to update image in %s deployment object",
                name,
            )
        if not cfg.images.bitwarden_sdk_server_image:
            raise new_irrecoverable_error(
                ValueError(
                    f"{BITWARDEN_SDK_SERVER_IMAGE_ENV} environment variable with "
                    "bitwarden-sdk-server image not set"
                ),
                "failed to update image in %s deployment object",
                name,
            )

        pod_spec = template.setdefault("spec", {})
        image = cfg.images.external_secrets_image
        if asset_name == CONTROLLER_DEPLOYMENT_ASSET:
            _update_container(pod_spec, "external-secrets", image, controller_args(cfg))
        elif asset_name == WEBHOOK_DEPLOYMENT_ASSET:
            _update_container(pod_spec, "webhook", image, webhook_args(cfg, self.namespace))
            if cfg.spec.cert_manager_enabled:
                _set_secret_volume(pod_spec, "certs", CERT_MANAGER_WEBHOOK_SECRET)
        elif asset_name == CERT_CONTROLLER_DEPLOYMENT_ASSET:
            _update_container(
                pod_spec, "cert-controller", image, cert_controller_args(cfg, self.namespace)
            )
        elif asset_name == BITWARDEN_DEPLOYMENT_ASSET:
            deployment["metadata"]["labels"]["app.kubernetes.io/version"] = (
                cfg.images.bitwarden_sdk_server_version
            )
            _update_container(
                pod_spec, "bitwarden-sdk-server", cfg.images.bitwarden_sdk_server_image
            )
            secret_ref = cfg.spec.bitwarden.secret_ref if cfg.spec.bitwarden else None
            if secret_ref is not None and secret_ref.name:
                _set_secret_volume(pod_spec, "bitwarden-tls-certs", secret_ref.name)

        overlays: List[tuple] = [
            ("failed to update resource requirements", self._apply_resources),
            ("failed to update affinity rules", self._apply_affinity),
            ("failed to update pod tolerations", self._apply_tolerations),
            ("failed to update node selector", self._apply_node_selector),
            ("failed to update proxy configuration", self._apply_proxy),
        ]
        for message, overlay in overlays:
            _apply_overlay(message, overlay, pod_spec, cfg)
        try:
            apply_component_config(deployment, cfg, DEPLOYMENT_COMPONENTS[asset_name])
        except ValueError as e:
            raise new_irrecoverable_error(e, "failed to apply user deployment configuration")
        return deployment

    def _apply_resources(self, pod_spec: Dict[str, Any], cfg: DesiredConfig) -> None:
        resources = cfg.resources
        if resources is None:
            return
        validate_resource_requirements(resources, "spec")
        for container in pod_spec.get("containers") or []:
            container["resources"] = copy.deepcopy(resources)

    def _apply_affinity(self, pod_spec: Dict[str, Any], cfg: DesiredConfig) -> None:
        affinity = cfg.affinity
        if affinity is None:
            return
        validate_affinity(affinity, "spec.affinity")
        pod_spec["affinity"] = copy.deepcopy(affinity)

    def _apply_tolerations(self, pod_spec: Dict[str, Any], cfg: DesiredConfig) -> None:
        tolerations = cfg.tolerations
        if tolerations is None:
            return
        validate_tolerations(tolerations, "spec.tolerations")
        pod_spec["tolerations"] = copy.deepcopy(tolerations)

    def _apply_node_selector(self, pod_spec: Dict[str, Any], cfg: DesiredConfig) -> None:
        node_selector = cfg.node_selector
        if node_selector is None:
            return
        validate_node_selector(node_selector, "spec.nodeSelector")
        pod_spec["nodeSelector"] = dict(node_selector)

    def _apply_proxy(self, pod_spec: Dict[str, Any], cfg: DesiredConfig) -> None:
        proxy = cfg.proxy
        containers = (pod_spec.get("containers") or []) + (pod_spec.get("initContainers") or [])
        if proxy is None:
            for container in containers:
                _remove_proxy_env(container)
            _remove_trusted_ca_volumes(pod_spec, containers)
            return
        for container in containers:
            _set_proxy_env(container, proxy)
        _add_trusted_ca_volumes(pod_spec, containers)


def _apply_overlay(
    message: str,
    overlay: Callable[[Dict[str, Any], DesiredConfig], None],
    pod_spec: Dict[str, Any],
    cfg: DesiredConfig,
) -> None:
    try:
        overlay(pod_spec, cfg)
    except ValueError as e:
        raise new_irrecoverable_error(e, message)


def _set_annotations(obj: Dict[str, Any], annotations: Dict[str, str]) -> None:
    metadata = obj.setdefault("metadata", {})
    metadata["annotations"] = {**(metadata.get("annotations") or {}), **annotations}


def controller_args(cfg: DesiredConfig) -> List[str]:
    args = [
        "--concurrent=1",
        "--metrics-addr=:8080",
        f"--loglevel={cfg.log_level}",
        "--zap-time-encoding=epoch",
        "--enable-leader-election=true",
        "--enable-push-secret-reconciler=true",
    ]
    # A namespace-scoped operand must not reconcile cluster-scoped stores
    namespace = cfg.spec.app_config.operating_namespace
    if namespace:
        args += [
            f"--namespace={namespace}",
            "--enable-cluster-store-reconciler=false",
            "--enable-cluster-external-secret-reconciler=false",
        ]
    else:
        args += [
            "--enable-cluster-store-reconciler=true",
            "--enable-cluster-external-secret-reconciler=true",
        ]
    return args


def webhook_args(cfg: DesiredConfig, namespace: str) -> List[str]:
    webhook_config = cfg.spec.app_config.webhook_config
    check_interval = DEFAULT_CHECK_INTERVAL
    if webhook_config is not None and webhook_config.certificate_check_interval:
        check_interval = webhook_config.certificate_check_interval
    return [
        "webhook",
        f"--dns-name=external-secrets-webhook.{namespace}.svc",
        "--port=10250",
        "--cert-dir=/tmp/certs",
        f"--check-interval={check_interval}",
        "--metrics-addr=:8080",
        "--healthz-addr=:8081",
        f"--loglevel={cfg.log_level}",
        "--zap-time-encoding=epoch",
    ]


def cert_controller_args(cfg: DesiredConfig, namespace: str) -> List[str]:
    return [
        "certcontroller",
        "--crd-requeue-interval=5m",
        "--service-name=external-secrets-webhook",
        f"--service-namespace={namespace}",
        "--secret-name=external-secrets-webhook",
        f"--secret-namespace={namespace}",
        "--metrics-addr=:8080",
        "--healthz-addr=:8081",
        f"--loglevel={cfg.log_level}",
        "--zap-time-encoding=epoch",
        "--enable-partial-cache=true",
    ]


def restricted_security_context() -> Dict[str, Any]:
    return {
        "allowPrivilegeEscalation": False,
        "capabilities": {"drop": ["ALL"]},
        "readOnlyRootFilesystem": True,
        "runAsNonRoot": True,
        "seccompProfile": {"type": "RuntimeDefault"},
    }


def _update_container(
    pod_spec: Dict[str, Any], name: str, image: str, args: Optional[List[str]] = None
) -> None:
    for container in pod_spec.get("containers") or []:
        if container.get("name") == name:
            if args is not None:
                container["args"] = args
            container["image"] = image
            container["securityContext"] = restricted_security_context()
            return


def _set_secret_volume(pod_spec: Dict[str, Any], volume_name: str, secret_name: str) -> None:
    volumes = pod_spec.setdefault("volumes", [])
    for volume in volumes:
        if volume.get("name") == volume_name:
            volume.setdefault("secret", {})["secretName"] = secret_name
            return
    volumes.append({"name": volume_name, "secret": {"secretName": secret_name}})


def _set_env(container: Dict[str, Any], name: str, value: str) -> None:
    env = container.setdefault("env", [])
    for var in env:
        if var.get("name") == name:
            var["value"] = value
            var.pop("valueFrom", None)
            return
    env.append({"name": name, "value": value})


def _set_proxy_env(container: Dict[str, Any], proxy: ProxyConfig) -> None:
    values = (proxy.http_proxy, proxy.https_proxy, proxy.no_proxy)
    for names in (PROXY_ENV_VARS, tuple(n.lower() for n in PROXY_ENV_VARS)):
        for name, value in zip(names, values):
            if value:
                _set_env(container, name, value)


def _remove_proxy_env(container: Dict[str, Any]) -> None:
    if container.get("env"):
        container["env"] = [v for v in container["env"] if v.get("name") not in ALL_PROXY_ENV_VARS]


def _add_trusted_ca_volumes(pod_spec: Dict[str, Any], containers: List[Dict[str, Any]]) -> None:
    volume = {"name": TRUSTED_CA_BUNDLE_VOLUME, "configMap": {"name": TRUSTED_CA_BUNDLE_CONFIGMAP}}
    volumes = pod_spec.setdefault("volumes", [])
    for i, existing in enumerate(volumes):
        if existing.get("name") == TRUSTED_CA_BUNDLE_VOLUME:
            volumes[i] = volume
            break
    else:
        volumes.append(volume)

    mount = {
        "name": TRUSTED_CA_BUNDLE_VOLUME,
        "mountPath": TRUSTED_CA_BUNDLE_MOUNT_PATH,
        "readOnly": True,
    }
    for container in containers:
        mounts = container.setdefault("volumeMounts", [])
        for i, existing in enumerate(mounts):
            if existing.get("name") == TRUSTED_CA_BUNDLE_VOLUME:
                mounts[i] = dict(mount)
                break
        else:
            mounts.append(dict(mount))


def _remove_trusted_ca_volumes(
    pod_spec: Dict[str, Any], containers: List[Dict[str, Any]]
) -> None:
    if pod_spec.get("volumes"):
        pod_spec["volumes"] = [
            v for v in pod_spec["volumes"] if v.get("name") != TRUSTED_CA_BUNDLE_VOLUME
        ]
    for container in containers:
        if container.get("volumeMounts"):
            container["volumeMounts"] = [
                m for m in container["volumeMounts"] if m.get("name") != TRUSTED_CA_BUNDLE_VOLUME
            ]


def apply_component_config(
    deployment: Dict[str, Any], cfg: DesiredConfig, component: ComponentName
) -> None:
    """Apply the user's per-component deployment settings."""
    component_config = cfg.spec.component_config(component)
    if component_config is None:
        return
    limit = component_config.deployment_configs.revision_history_limit
    if limit is not None:
        deployment["spec"]["revisionHistoryLimit"] = limit

    containers = deployment["spec"]["template"]["spec"].get("containers") or []
    for var in component_config.override_env:
        name = var.get("name")
        if not name:
            raise ValueError("overrideEnv entries must have a name")
        for container in containers:
            env = container.setdefault("env", [])
            for i, existing in enumerate(env):
                if existing.get("name") == name:
                    env[i] = copy.deepcopy(var)
                    break
            else:
                env.append(copy.deepcopy(var))
