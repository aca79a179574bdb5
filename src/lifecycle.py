"""
Lifecycle Manager - Finalizer handling for the operator's custom resources.

A resource moves Active -> Terminating -> Removed. The finalizer is
added on the first pass of an Active resource, before anything else is
created, and removed only once the cleanup callback reports completion.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List

from errors import from_client_error, is_not_found
from kube import object_key

logger = logging.getLogger(__name__)

ESC_FINALIZER = "externalsecrets.openshift.operator.io/external-secrets-controller"
ESM_FINALIZER = "externalsecretsmanagers.operator.openshift.io/external-secrets-manager"

# Returns True to ask for a delayed retry; raises when cleanup failed
CleanupCallback = Callable[[Dict[str, Any]], Awaitable[bool]]


def finalizers(obj: Dict[str, Any]) -> List[str]:
    return list((obj.get("metadata") or {}).get("finalizers") or [])


def has_finalizer(obj: Dict[str, Any], finalizer: str) -> bool:
    return finalizer in finalizers(obj)


def is_terminating(obj: Dict[str, Any]) -> bool:
    return bool((obj.get("metadata") or {}).get("deletionTimestamp"))


class LifecycleManager:
    """Adds and removes one finalizer token on a kind of custom resource."""

    def __init__(self, kube, finalizer: str):
        self.kube = kube
        self.finalizer = finalizer

    async def add_finalizer(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Ensure the finalizer is present.

        Returns:
            The object re-read after the write, or ``obj`` unchanged when
            the finalizer was already there.

        Raises:
            ReconcileError: If the finalizer could not be persisted.
        """
        if has_finalizer(obj, self.finalizer):
            return obj

        name, namespace = object_key(obj)

        def add(current: Dict[str, Any]) -> bool:
            metadata = current.setdefault("metadata", {})
            present = metadata.get("finalizers") or []
            if self.finalizer in present:
                return False
            metadata["finalizers"] = present + [self.finalizer]
            return True

        try:
            await self.kube.mutate_with_retry(obj["kind"], name, add, namespace)
            updated = await self.kube.get(obj["kind"], name, namespace)
        except Exception as e:
            raise from_client_error(e, "failed to add finalizers on %r", name)
        logger.info(f"Added finalizer {self.finalizer} to {obj['kind']} {name}")
        return updated

    async def remove_finalizer(self, obj: Dict[str, Any]) -> None:
        """Drop the finalizer, letting the platform garbage collect ``obj``."""
        if not has_finalizer(obj, self.finalizer):
            return

        name, namespace = object_key(obj)

        def remove(current: Dict[str, Any]) -> bool:
            metadata = current.setdefault("metadata", {})
            present = metadata.get("finalizers") or []
            if self.finalizer not in present:
                return False
            metadata["finalizers"] = [f for f in present if f != self.finalizer]
            return True

        try:
            await self.kube.mutate_with_retry(obj["kind"], name, remove, namespace)
        except Exception as e:
            if is_not_found(e):
                return
            raise from_client_error(e, "failed to remove finalizers on %r", name)
        logger.info(f"Removed finalizer {self.finalizer} from {obj['kind']} {name}")

    async def finalize(self, obj: Dict[str, Any], cleanup: CleanupCallback) -> bool:
        """
        Run cleanup for a terminating object, then release it.

        Args:
            obj: The terminating object.
            cleanup: Callback returning True when it needs another attempt.

        Returns:
            True when cleanup asked for a delayed retry and the finalizer was
            kept.
        """
        if await cleanup(obj):
            logger.info(f"Cleanup of {obj['kind']} {object_key(obj)[0]} requested a retry")
            return True
        await self.remove_finalizer(obj)
        return False
