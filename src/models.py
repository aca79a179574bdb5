"""
Custom resource models for the operator's API group.

Specs are parsed with Pydantic from the JSON-shaped objects read off the
cluster. Kubernetes core structures embedded in a spec (resources,
affinity, tolerations, egress rules, env vars) stay as plain dicts and are
validated separately by ``validation``.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

GROUP = "operator.openshift.io"
VERSION = "v1alpha1"

ESC_PLURAL = "externalsecretsconfigs"
ESC_KIND = "ExternalSecretsConfig"
ESM_PLURAL = "externalsecretsmanagers"
ESM_KIND = "ExternalSecretsManager"

# Both custom resources are cluster-scoped singletons.
SINGLETON_NAME = "cluster"


class Mode(str, Enum):
    ENABLED = "Enabled"
    DISABLED = "Disabled"
    DISABLED_AND_CLEANUP = "DisabledAndCleanup"


class ComponentName(str, Enum):
    CORE_CONTROLLER = "ExternalSecretsCoreController"
    WEBHOOK = "Webhook"
    CERT_CONTROLLER = "CertController"
    BITWARDEN_SDK_SERVER = "BitwardenSDKServer"


def parse_bool(value: Optional[str]) -> bool:
    """CR booleans are strings, true only for ``"true"``."""
    return value == "true"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ObjectReference(_Model):
    name: str = ""
    kind: str = ""
    group: str = ""


class SecretReference(_Model):
    name: str = ""


class ProxyConfig(_Model):
    http_proxy: str = Field(default="", alias="httpProxy")
    https_proxy: str = Field(default="", alias="httpsProxy")
    no_proxy: str = Field(default="", alias="noProxy")

    def is_set(self) -> bool:
        return bool(self.http_proxy or self.https_proxy or self.no_proxy)


class CommonConfigs(_Model):
    """Scheduling and logging settings shared by ESC and ESM."""

    log_level: Optional[int] = Field(default=None, alias="logLevel")
    resources: Optional[Dict[str, Any]] = None
    affinity: Optional[Dict[str, Any]] = None
    tolerations: Optional[List[Dict[str, Any]]] = None
    node_selector: Optional[Dict[str, str]] = Field(default=None, alias="nodeSelector")
    proxy: Optional[ProxyConfig] = None


class WebhookConfig(_Model):
    certificate_check_interval: Optional[str] = Field(
        default=None, alias="certificateCheckInterval"
    )


class ApplicationConfig(CommonConfigs):
    operating_namespace: str = Field(default="", alias="operatingNamespace")
    webhook_config: Optional[WebhookConfig] = Field(default=None, alias="webhookConfig")


class BitwardenSecretManagerProvider(_Model):
    mode: Optional[Mode] = None
    secret_ref: Optional[SecretReference] = Field(default=None, alias="secretRef")

    @property
    def enabled(self) -> bool:
        return self.mode == Mode.ENABLED


class PluginsConfig(_Model):
    bitwarden_secret_manager_provider: Optional[BitwardenSecretManagerProvider] = Field(
        default=None, alias="bitwardenSecretManagerProvider"
    )


class CertManagerConfig(_Model):
    mode: Optional[Mode] = None
    inject_annotations: str = Field(default="", alias="injectAnnotations")
    issuer_ref: Optional[ObjectReference] = Field(default=None, alias="issuerRef")
    certificate_duration: Optional[str] = Field(default=None, alias="certificateDuration")
    certificate_renew_before: Optional[str] = Field(
        default=None, alias="certificateRenewBefore"
    )

    @property
    def enabled(self) -> bool:
        return self.mode == Mode.ENABLED


class CertProvidersConfig(_Model):
    cert_manager: Optional[CertManagerConfig] = Field(default=None, alias="certManager")


class Annotation(_Model):
    key: str
    value: str = ""


class NetworkPolicy(_Model):
    name: str
    component_name: str = Field(alias="componentName")
    egress: List[Dict[str, Any]] = Field(default_factory=list)


class DeploymentConfig(_Model):
    revision_history_limit: Optional[int] = Field(
        default=None, alias="revisionHistoryLimit"
    )

    @field_validator("revision_history_limit")
    @classmethod
    def validate_revision_history_limit(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("revisionHistoryLimit must be at least 1")
        return v


class ComponentConfig(_Model):
    component_name: ComponentName = Field(alias="componentName")
    deployment_configs: DeploymentConfig = Field(
        default_factory=DeploymentConfig, alias="deploymentConfigs"
    )
    override_env: List[Dict[str, Any]] = Field(default_factory=list, alias="overrideEnv")


class ControllerConfig(_Model):
    cert_provider: Optional[CertProvidersConfig] = Field(
        default=None, alias="certProvider"
    )
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: List[Annotation] = Field(default_factory=list)
    network_policies: List[NetworkPolicy] = Field(
        default_factory=list, alias="networkPolicies"
    )
    component_configs: List[ComponentConfig] = Field(
        default_factory=list, alias="componentConfigs"
    )


class ExternalSecretsConfigSpec(_Model):
    app_config: ApplicationConfig = Field(
        default_factory=ApplicationConfig, alias="appConfig"
    )
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)
    controller_config: ControllerConfig = Field(
        default_factory=ControllerConfig, alias="controllerConfig"
    )

    @property
    def cert_manager(self) -> Optional[CertManagerConfig]:
        provider = self.controller_config.cert_provider
        return provider.cert_manager if provider else None

    @property
    def cert_manager_enabled(self) -> bool:
        return self.cert_manager is not None and self.cert_manager.enabled

    @property
    def inject_annotations_enabled(self) -> bool:
        return self.cert_manager is not None and parse_bool(
            self.cert_manager.inject_annotations
        )

    @property
    def bitwarden(self) -> Optional[BitwardenSecretManagerProvider]:
        return self.plugins.bitwarden_secret_manager_provider

    @property
    def bitwarden_enabled(self) -> bool:
        return self.bitwarden is not None and self.bitwarden.enabled

    def component_config(self, name: ComponentName) -> Optional[ComponentConfig]:
        for cfg in self.controller_config.component_configs:
            if cfg.component_name == name:
                return cfg
        return None


class GlobalConfig(CommonConfigs):
    labels: Dict[str, str] = Field(default_factory=dict)


class Feature(_Model):
    name: str
    enabled: bool = False


class ExternalSecretsManagerSpec(_Model):
    global_config: Optional[GlobalConfig] = Field(default=None, alias="globalConfig")
    features: List[Feature] = Field(default_factory=list)


def esc_spec(obj: Optional[Dict[str, Any]]) -> ExternalSecretsConfigSpec:
    """Parse the spec of an ExternalSecretsConfig object dict."""
    return ExternalSecretsConfigSpec.model_validate((obj or {}).get("spec") or {})


def esm_spec(obj: Optional[Dict[str, Any]]) -> ExternalSecretsManagerSpec:
    """Parse the spec of an ExternalSecretsManager object dict; empty when absent."""
    return ExternalSecretsManagerSpec.model_validate((obj or {}).get("spec") or {})
