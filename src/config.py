"""
Configuration module for the External Secrets Operator.

Loads configuration from environment variables. Operand image references
are read here but only enforced when a workload is rendered, so a missing
image fails the reconcile pass instead of the process start.
"""

import os
from dataclasses import dataclass
from typing import Optional

EXTERNAL_SECRETS_IMAGE_ENV = "RELATED_IMAGE_EXTERNAL_SECRETS"
BITWARDEN_SDK_SERVER_IMAGE_ENV = "RELATED_IMAGE_BITWARDEN_SDK_SERVER"


@dataclass
class ImageConfig:
    """Operand image references supplied by the operator deployment."""

    external_secrets_image: str = ""
    bitwarden_sdk_server_image: str = ""
    external_secrets_version: str = ""
    bitwarden_sdk_server_version: str = ""
    operator_version: str = ""

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            external_secrets_image=os.getenv(EXTERNAL_SECRETS_IMAGE_ENV, ""),
            bitwarden_sdk_server_image=os.getenv(BITWARDEN_SDK_SERVER_IMAGE_ENV, ""),
            external_secrets_version=os.getenv(
                "OPERAND_EXTERNAL_SECRETS_IMAGE_VERSION", ""
            ),
            bitwarden_sdk_server_version=os.getenv(
                "BITWARDEN_SDK_SERVER_IMAGE_VERSION", ""
            ),
            operator_version=os.getenv("OPERATOR_IMAGE_VERSION", ""),
        )


@dataclass
class ProxyConfig:
    """Process-level proxy settings, the last fallback for operand proxies."""

    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            http_proxy=os.getenv("HTTP_PROXY", ""),
            https_proxy=os.getenv("HTTPS_PROXY", ""),
            no_proxy=os.getenv("NO_PROXY", ""),
        )

    def is_set(self) -> bool:
        return bool(self.http_proxy or self.https_proxy or self.no_proxy)


@dataclass
class ControllerConfig:
    """Controller work queue and client configuration."""

    max_concurrent_reconciles: int = 1
    requeue_after_seconds: int = 30
    update_retry_attempts: int = 5
    update_retry_backoff_seconds: float = 0.01
    request_timeout_seconds: float = 30.0
    reconcile_timeout_seconds: float = 300.0
    operand_namespace: str = "external-secrets"
    kubeconfig: Optional[str] = None  # in-cluster config when unset

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "1")),
            requeue_after_seconds=int(os.getenv("REQUEUE_AFTER_SECONDS", "30")),
            update_retry_attempts=int(os.getenv("UPDATE_RETRY_ATTEMPTS", "5")),
            update_retry_backoff_seconds=float(
                os.getenv("UPDATE_RETRY_BACKOFF_SECONDS", "0.01")
            ),
            request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30")),
            reconcile_timeout_seconds=float(os.getenv("RECONCILE_TIMEOUT_SECONDS", "300")),
            operand_namespace=os.getenv("OPERAND_NAMESPACE", "external-secrets"),
            kubeconfig=os.getenv("KUBECONFIG") or None,
        )


@dataclass
class HealthConfig:
    """Health probe server configuration."""

    host: str = "0.0.0.0"
    port: int = 8081
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("HEALTH_PROBE_HOST", "0.0.0.0"),
            port=int(os.getenv("HEALTH_PROBE_PORT", "8081")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class Config:
    """Main configuration object."""

    images: ImageConfig
    proxy: ProxyConfig
    controller: ControllerConfig
    health: HealthConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            images=ImageConfig.from_env(),
            proxy=ProxyConfig.from_env(),
            controller=ControllerConfig.from_env(),
            health=HealthConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            images=ImageConfig(),
            proxy=ProxyConfig(),
            controller=ControllerConfig(),
            health=HealthConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
