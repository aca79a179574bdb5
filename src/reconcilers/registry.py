"""
Reconciler Registry - Registration and instantiation of reconcilers.

Reconciler classes are registered once at startup. Instances are created
per run with a shared context; reconcilers that need an optional cluster
capability are only instantiated when it was detected.
"""

import logging
from typing import Dict, List, Optional, Type

from reconcilers.base import Reconciler, ReconcilerContext

logger = logging.getLogger(__name__)


class ReconcilerRegistry:
    """Central registry of reconciler classes."""

    def __init__(self):
        self._reconcilers: Dict[str, Type[Reconciler]] = {}
        # Capability a reconciler class needs, if any
        self._requires: Dict[str, Optional[str]] = {}

    def register(
        self, name: str, reconciler_class: Type[Reconciler], requires: Optional[str] = None
    ) -> None:
        """
        Register a reconciler class.

        Args:
            name: Controller name.
            reconciler_class: The Reconciler subclass.
            requires: Capability that must be present for it to run.
        """
        if name in self._reconcilers:
            logger.warning(f"Overwriting existing reconciler: {name}")
        self._reconcilers[name] = reconciler_class
        self._requires[name] = requires
        logger.info(f"Registered reconciler: {name}")

    def list_reconcilers(self) -> List[str]:
        return list(self._reconcilers.keys())

    def create_reconcilers(self, ctx: ReconcilerContext) -> List[Reconciler]:
        """Instantiate every registered reconciler whose capability is present."""
        instances = []
        for name, reconciler_class in self._reconcilers.items():
            requires = self._requires[name]
            if requires is not None and not ctx.capabilities.has(requires):
                logger.info(f"Skipping reconciler {name}: {requires} is not installed")
                continue
            instances.append(reconciler_class(ctx))
        return instances


def register_builtin_reconcilers(registry: ReconcilerRegistry) -> None:
    from capabilities import CERTIFICATE_CAPABILITY
    from reconcilers.crd_annotator import CONTROLLER_NAME as CRD_ANNOTATOR
    from reconcilers.crd_annotator import CRDAnnotator
    from reconcilers.external_secrets import CONTROLLER_NAME as ESC_CONTROLLER
    from reconcilers.external_secrets import ExternalSecretsConfigReconciler
    from reconcilers.manager import CONTROLLER_NAME as ESM_CONTROLLER
    from reconcilers.manager import ExternalSecretsManagerReconciler

    registry.register(ESM_CONTROLLER, ExternalSecretsManagerReconciler)
    registry.register(ESC_CONTROLLER, ExternalSecretsConfigReconciler)
    registry.register(CRD_ANNOTATOR, CRDAnnotator, requires=CERTIFICATE_CAPABILITY)
