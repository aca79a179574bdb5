"""
Capability Detection - Optional cluster extensions and the scoped watch set.

Discovery runs once at startup. The resulting CapabilityRegistry is
read-only and is passed to the builder and the controller runtime
explicitly rather than living in module state.
"""

import logging
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)

# Label every managed object carries; watches are filtered on it.
MANAGED_LABEL_KEY = "app"
MANAGED_LABEL_VALUE = "external-secrets"
MANAGED_LABEL_SELECTOR = f"{MANAGED_LABEL_KEY}={MANAGED_LABEL_VALUE}"


@dataclass(frozen=True)
class OptionalResource:
    """An extension kind the operator can use when it is installed."""

    kind: str
    plural: str
    group_version: str

    @property
    def capability(self) -> str:
        """Identifier such as ``certificate.cert-manager.io/v1``."""
        return f"{self.kind.lower()}.{self.group_version}"


CERTIFICATE = OptionalResource("Certificate", "certificates", "cert-manager.io/v1")
CERTIFICATE_CAPABILITY = CERTIFICATE.capability

OPTIONAL_RESOURCES = (CERTIFICATE,)

MANAGED_KINDS = (
    "ClusterRole",
    "ClusterRoleBinding",
    "Deployment",
    "NetworkPolicy",
    "Role",
    "RoleBinding",
    "Secret",
    "Service",
    "ServiceAccount",
    "ConfigMap",
    "ValidatingWebhookConfiguration",
)

PRIMARY_KINDS = ("ExternalSecretsConfig", "ExternalSecretsManager")


class CapabilityRegistry:
    """Set of optional extension capabilities confirmed present."""

    def __init__(self, capabilities: Iterable[str] = ()):
        self._capabilities: FrozenSet[str] = frozenset(capabilities)

    def has(self, capability: str) -> bool:
        return capability in self._capabilities

    @property
    def cert_manager_installed(self) -> bool:
        return self.has(CERTIFICATE_CAPABILITY)

    def __contains__(self, capability: str) -> bool:
        return self.has(capability)

    def __iter__(self):
        return iter(sorted(self._capabilities))

    def __repr__(self) -> str:
        return f"CapabilityRegistry({sorted(self._capabilities)!r})"


async def detect(kube, resources: Iterable[OptionalResource] = OPTIONAL_RESOURCES) -> CapabilityRegistry:
    """
    Query API discovery for each optional resource.

    Args:
        kube: A KubeClient.
        resources: Optional resources to probe.

    Returns:
        A CapabilityRegistry of the resources found.

    Raises:
        ApiException: If discovery itself fails.
    """
    found = []
    served = {}
    for resource in resources:
        if resource.group_version not in served:
            served[resource.group_version] = await kube.discover(resource.group_version)
        if resource.plural in served[resource.group_version]:
            found.append(resource.capability)
            logger.info(f"Optional resource {resource.plural}.{resource.group_version} is installed")
        else:
            logger.info(
                f"Optional resource {resource.plural}.{resource.group_version} is not installed"
            )
    return CapabilityRegistry(found)


@dataclass(frozen=True)
class WatchSpec:
    """One change-notification subscription."""

    kind: str
    label_selector: Optional[str] = None
    namespace: Optional[str] = None


def build_watch_set(registry: CapabilityRegistry) -> List[WatchSpec]:
    """
    Build the bounded set of watches.

    Managed kinds are filtered to objects carrying the managed label. The
    operator's own custom resources are watched unfiltered. Certificates
    are watched only when cert-manager is installed.
    """
    watches = [WatchSpec(kind, MANAGED_LABEL_SELECTOR) for kind in MANAGED_KINDS]
    watches.extend(WatchSpec(kind) for kind in PRIMARY_KINDS)
    if registry.cert_manager_installed:
        watches.append(WatchSpec(CERTIFICATE.kind, MANAGED_LABEL_SELECTOR))
    return watches


def is_managed(obj: dict) -> bool:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return labels.get(MANAGED_LABEL_KEY) == MANAGED_LABEL_VALUE
