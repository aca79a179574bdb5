"""
ExternalSecretsManager Reconciler - Fans child conditions into the manager.

The manager resource carries a bucket per child controller. This pass
copies the ExternalSecretsConfig conditions into their bucket so that a
single object reports the health of the whole operator.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from kubernetes_asyncio.client.exceptions import ApiException

from capabilities import WatchSpec
from conditions import update_controller_status
from errors import from_client_error, is_already_exists, is_conflict, is_not_found
from kube import object_key
from lifecycle import ESM_FINALIZER, LifecycleManager, is_terminating
from models import (
    ESC_KIND,
    ESC_PLURAL,
    ESM_KIND,
    ESM_PLURAL,
    GROUP,
    SINGLETON_NAME,
    VERSION,
)
from reconcilers.base import (
    ReconcileResult,
    Reconciler,
    ReconcilerContext,
    non_status_changed,
    status_changed,
)

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "external-secrets-manager"
RESOURCE_NAME = f"{ESM_PLURAL}.{GROUP}"

# Bucket name the config controller's conditions are published under
ESC_CONTROLLER_STATUS = f"{ESC_PLURAL}.{GROUP}/{VERSION}"

# Create failures not worth retrying at startup: bad request, unauthorized,
# forbidden, invalid and too many requests
PERMANENT_CREATE_STATUSES = frozenset({400, 401, 403, 422, 429})


class ExternalSecretsManagerReconciler(Reconciler):
    """Aggregates child controller status into the ExternalSecretsManager."""

    def __init__(self, ctx: ReconcilerContext):
        super().__init__(ctx)
        self.kube = ctx.kube
        self.recorder = ctx.recorder
        self.lifecycle = LifecycleManager(ctx.kube, ESM_FINALIZER)
        # Set after a failed read has been reported, cleared by a good one
        self.read_failure_reported = False

    @property
    def name(self) -> str:
        return CONTROLLER_NAME

    def watches(self) -> List[WatchSpec]:
        return [WatchSpec(ESM_KIND), WatchSpec(ESC_KIND)]

    def map_event(
        self,
        event_type: str,
        obj: Dict[str, Any],
        old: Optional[Dict[str, Any]],
    ) -> List[str]:
        kind = obj.get("kind")
        if kind == ESM_KIND:
            if event_type == "MODIFIED" and not non_status_changed(old, obj):
                return []
            return [object_key(obj)[0]]
        if kind == ESC_KIND:
            # Only a child status change has anything to fan in
            if event_type == "MODIFIED" and not status_changed(old, obj):
                return []
            return [SINGLETON_NAME]
        return []

    def initial_keys(self) -> List[str]:
        return [SINGLETON_NAME]

    async def reconcile(self, key: str) -> ReconcileResult:
        logger.debug(f"Reconciling {RESOURCE_NAME} {key}")
        try:
            esm = await self.kube.get(ESM_KIND, key)
        except Exception as e:
            if not self.read_failure_reported:
                await self.recorder.warning(
                    {
                        "apiVersion": f"{GROUP}/{VERSION}",
                        "kind": ESM_KIND,
                        "metadata": {"name": key},
                    },
                    "Read",
                    f"failed to fetch {RESOURCE_NAME} {key!r}",
                )
                self.read_failure_reported = True
            message = f"failed to fetch {RESOURCE_NAME} {key!r} during reconciliation: {e}"
            logger.error(message)
            return ReconcileResult.retry(message, self.ctx.requeue_after)
        self.read_failure_reported = False

        if is_terminating(esm):
            logger.info(f"{RESOURCE_NAME} {key} is marked for deletion")
            try:
                await self.lifecycle.remove_finalizer(esm)
            except Exception as e:
                logger.error(f"Failed to remove finalizer from {RESOURCE_NAME} {key}: {e}")
                return ReconcileResult.retry(str(e), self.ctx.requeue_after)
            return ReconcileResult.done("finalized")

        try:
            esm = await self.lifecycle.add_finalizer(esm)
        except Exception as e:
            logger.error(f"Failed to add finalizer on {RESOURCE_NAME} {key}: {e}")
            return ReconcileResult.retry(str(e), self.ctx.requeue_after)

        try:
            esc = await self.kube.get(ESC_KIND, SINGLETON_NAME)
        except Exception as e:
            if is_not_found(e):
                logger.debug(f"{ESC_PLURAL}.{GROUP} {SINGLETON_NAME} not found, nothing to aggregate")
                return ReconcileResult.done("no child status")
            message = f"failed to fetch {ESC_PLURAL}.{GROUP} {SINGLETON_NAME!r}: {e}"
            logger.error(message)
            return ReconcileResult.retry(message, self.ctx.requeue_after)

        try:
            changed = await self.aggregate_status(key, esc)
        except Exception as e:
            logger.error(f"Failed to update {RESOURCE_NAME} {key} status: {e}")
            return ReconcileResult.retry(str(e), self.ctx.requeue_after)

        if changed:
            logger.info(f"Updated {RESOURCE_NAME} {key} status")
        return ReconcileResult.done("status aggregated")

    async def aggregate_status(self, key: str, esc: Dict[str, Any]) -> bool:
        """
        Republish the config's conditions in the manager's status.

        Returns:
            True if the manager status was written.

        Raises:
            ReconcileError: If the status write failed.
        """
        conditions = (esc.get("status") or {}).get("conditions") or []
        generation = (esc.get("metadata") or {}).get("generation", 0) or 0
        written = False

        def apply(current: Dict[str, Any]) -> bool:
            nonlocal written
            status = current.setdefault("status", {})
            written = update_controller_status(
                status, ESC_CONTROLLER_STATUS, conditions, generation
            )
            return written

        try:
            await self.kube.mutate_with_retry(ESM_KIND, key, apply, status=True)
        except Exception as e:
            raise from_client_error(e, "failed to update %s %s status", RESOURCE_NAME, key)
        return written


def _is_permanent_create_error(err: BaseException) -> bool:
    """Create failures that another attempt will not change."""
    if is_already_exists(err) or is_conflict(err):
        return True
    return isinstance(err, ApiException) and err.status in PERMANENT_CREATE_STATUSES


async def create_default_manager(
    kube,
    operator_version: str = "",
    attempts: int = 5,
    backoff: float = 0.01,
) -> bool:
    """
    Create the default ExternalSecretsManager ``cluster``.

    An existing manager counts as success, as does one still terminating
    from a previous install; the controller recreates it later.

    Args:
        kube: A KubeClient.
        operator_version: Value for the version label.
        attempts: Maximum create attempts for transient failures.
        backoff: Delay in seconds between attempts.

    Returns:
        True if the manager was created by this call.

    Raises:
        ApiException: If creation failed permanently or retries ran out.
    """
    esm = {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": ESM_KIND,
        "metadata": {
            "name": SINGLETON_NAME,
            "labels": {
                "app.kubernetes.io/name": SINGLETON_NAME,
                "app.kubernetes.io/instance": SINGLETON_NAME,
                "app.kubernetes.io/version": operator_version,
                "app.kubernetes.io/managed-by": "external-secrets-operator",
                "app.kubernetes.io/part-of": "external-secrets-operator",
            },
        },
        "spec": {},
    }

    last_error: Optional[BaseException] = None
    for attempt in range(attempts):
        try:
            await kube.create(esm)
        except Exception as e:
            if is_already_exists(e):
                logger.info(f"{RESOURCE_NAME} {SINGLETON_NAME} already exists")
                return False
            if "terminating" in str(e):
                logger.info(f"{RESOURCE_NAME} {SINGLETON_NAME} is terminating, will be recreated")
                return False
            if _is_permanent_create_error(e):
                raise
            last_error = e
            logger.debug(
                f"Failed to create {RESOURCE_NAME} {SINGLETON_NAME}, "
                f"attempt {attempt + 1}/{attempts}: {e}"
            )
            await asyncio.sleep(backoff)
            continue
        logger.info(f"Created default {RESOURCE_NAME} {SINGLETON_NAME}")
        return True
    raise last_error
