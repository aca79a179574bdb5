"""
ExternalSecretsConfig Reconciler - Installs and maintains the operand.

One pass fetches the singleton ExternalSecretsConfig, handles deletion,
builds the desired object set, converges it through the driver and
publishes the outcome as the Degraded and Ready conditions.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from builder import PROCESSED_ANNOTATION, DesiredStateBuilder
from capabilities import WatchSpec, build_watch_set, is_managed
from conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    DEGRADED,
    READY,
    REASON_FAILED,
    REASON_IN_PROGRESS,
    REASON_READY,
    Condition,
    set_status_condition,
)
from config import ImageConfig
from driver import ReconciliationDriver
from errors import (
    ReconcileError,
    aggregate,
    from_client_error,
    is_irrecoverable_error,
    is_not_found,
    new_irrecoverable_error,
    new_retry_required_error,
)
from events import EventType
from kube import object_key
from lifecycle import ESC_FINALIZER, LifecycleManager, is_terminating
from models import ESC_KIND, ESC_PLURAL, ESM_KIND, GROUP, SINGLETON_NAME
from reconcilers.base import (
    ReconcileResult,
    Reconciler,
    ReconcilerContext,
    non_status_changed,
)

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "external-secrets-controller"
RESOURCE_NAME = f"{ESC_PLURAL}.{GROUP}"


def is_first_reconcile(esc: Dict[str, Any]) -> bool:
    """A config never processed before has no marker and an empty status."""
    annotations = (esc.get("metadata") or {}).get("annotations") or {}
    return PROCESSED_ANNOTATION not in annotations and not esc.get("status")


class ExternalSecretsConfigReconciler(Reconciler):
    """Reconciles the cluster ExternalSecretsConfig into the operand."""

    def __init__(self, ctx: ReconcilerContext):
        super().__init__(ctx)
        config = ctx.config
        self.kube = ctx.kube
        self.recorder = ctx.recorder
        self.builder = DesiredStateBuilder(
            ctx.kube,
            ctx.capabilities,
            config.images,
            env_proxy=config.proxy,
            namespace=config.controller.operand_namespace,
        )
        self.driver = ReconciliationDriver(ctx.kube, ctx.recorder)
        self.lifecycle = LifecycleManager(ctx.kube, ESC_FINALIZER)

    @property
    def name(self) -> str:
        return CONTROLLER_NAME

    def watches(self) -> List[WatchSpec]:
        return build_watch_set(self.ctx.capabilities)

    def map_event(
        self,
        event_type: str,
        obj: Dict[str, Any],
        old: Optional[Dict[str, Any]],
    ) -> List[str]:
        kind = obj.get("kind")
        if kind == ESC_KIND:
            # Our own status writes must not retrigger the pass
            if event_type == "MODIFIED" and not non_status_changed(old, obj):
                return []
            return [object_key(obj)[0]]
        if kind == ESM_KIND:
            if event_type == "MODIFIED" and not non_status_changed(old, obj):
                return []
            return [SINGLETON_NAME]
        if is_managed(obj):
            return [SINGLETON_NAME]
        return []

    def initial_keys(self) -> List[str]:
        return [SINGLETON_NAME]

    async def reconcile(self, key: str) -> ReconcileResult:
        logger.debug(f"Reconciling {RESOURCE_NAME} {key}")
        try:
            esc = await self.kube.get(ESC_KIND, key)
        except Exception as e:
            if is_not_found(e):
                logger.debug(f"{RESOURCE_NAME} {key} not found, skipping reconciliation")
                return ReconcileResult.done(f"{key} not found")
            message = f"failed to fetch {RESOURCE_NAME} {key!r} during reconciliation: {e}"
            logger.error(message)
            return ReconcileResult.retry(message, self.ctx.requeue_after)

        if is_terminating(esc):
            logger.info(f"{RESOURCE_NAME} {key} is marked for deletion")
            try:
                requeue = await self.lifecycle.finalize(esc, self.cleanup)
            except Exception as e:
                message = f"failed to clean up {RESOURCE_NAME} {key!r}: {e}"
                logger.error(message)
                return ReconcileResult.retry(message, self.ctx.requeue_after)
            if requeue:
                return ReconcileResult.retry("cleanup in progress", self.ctx.requeue_after)
            logger.info(f"Removed finalizer, cleanup complete for {RESOURCE_NAME} {key}")
            return ReconcileResult.done("finalized")

        try:
            esc = await self.lifecycle.add_finalizer(esc)
        except Exception as e:
            logger.error(f"Failed to add finalizer on {RESOURCE_NAME} {key}: {e}")
            return ReconcileResult.retry(str(e), self.ctx.requeue_after)

        try:
            esm = await self.kube.get(ESM_KIND, SINGLETON_NAME)
        except Exception as e:
            if not is_not_found(e):
                message = f"failed to fetch externalsecretsmanagers.{GROUP} {SINGLETON_NAME!r}: {e}"
                logger.error(message)
                return ReconcileResult.retry(message, self.ctx.requeue_after)
            esm = None

        err: Optional[BaseException] = None
        try:
            await self.reconcile_operand(esc, esm, is_first_reconcile(esc))
        except ReconcileError as e:
            err = e
        except ValidationError as e:
            err = new_irrecoverable_error(e, "invalid %s spec", key)
        except Exception as e:
            err = new_retry_required_error(e, "failed to reconcile %s", key)

        return await self.record_outcome(esc, err)

    async def reconcile_operand(
        self,
        esc: Dict[str, Any],
        esm: Optional[Dict[str, Any]],
        first_reconcile: bool,
    ) -> None:
        """
        Build and converge the operand, then mark the config processed.

        Raises:
            ReconcileError: The classified failure of whichever step failed.
        """
        state = await self.builder.build(esc, esm)
        await self.driver.apply(esc, state.descriptors, first_reconcile)
        await self.update_image_status(esc, state.config.images)
        await self.mark_processed(esc)

    async def record_outcome(
        self, esc: Dict[str, Any], err: Optional[BaseException]
    ) -> ReconcileResult:
        """Translate the pass outcome into conditions and a queue decision."""
        name = object_key(esc)[0]
        generation = (esc.get("metadata") or {}).get("generation", 0) or 0

        if err is not None and is_irrecoverable_error(err):
            logger.error(f"{RESOURCE_NAME} {name} reconciliation failed, not retrying: {err}")
            status_err = await self.update_conditions(
                esc,
                [
                    Condition(
                        DEGRADED,
                        CONDITION_TRUE,
                        REASON_FAILED,
                        f"reconciliation failed with irrecoverable error, not retrying: {err}",
                        generation,
                    ),
                    Condition(READY, CONDITION_FALSE, REASON_READY, "", generation),
                ],
            )
            if status_err is not None:
                combined = aggregate([err, status_err])
                return ReconcileResult.retry(str(combined), self.ctx.requeue_after)
            return ReconcileResult.irrecoverable(str(err))

        if err is not None:
            logger.error(f"{RESOURCE_NAME} {name} reconciliation failed, retrying: {err}")
            status_err = await self.update_conditions(
                esc,
                [
                    Condition(DEGRADED, CONDITION_FALSE, REASON_READY, "", generation),
                    Condition(
                        READY,
                        CONDITION_FALSE,
                        REASON_IN_PROGRESS,
                        f"reconciliation failed, retrying: {err}",
                        generation,
                    ),
                ],
            )
            combined = aggregate([err, status_err])
            return ReconcileResult.retry(str(combined), self.ctx.requeue_after)

        status_err = await self.update_conditions(
            esc,
            [
                Condition(DEGRADED, CONDITION_FALSE, REASON_READY, "", generation),
                Condition(
                    READY, CONDITION_TRUE, REASON_READY, "reconciliation successful", generation
                ),
            ],
        )
        if status_err is not None:
            logger.error(f"Failed to update {RESOURCE_NAME} {name} status: {status_err}")
            return ReconcileResult.retry(str(status_err), self.ctx.requeue_after)
        logger.info(f"{RESOURCE_NAME} {name} reconciled successfully")
        return ReconcileResult.done("reconciliation successful")

    async def update_conditions(
        self, esc: Dict[str, Any], conditions: List[Condition]
    ) -> Optional[BaseException]:
        """
        Upsert conditions on the live object; writes only when one changed.

        Returns:
            The classified write failure, or None.
        """
        name = object_key(esc)[0]

        def apply(current: Dict[str, Any]) -> bool:
            stored = current.setdefault("status", {}).setdefault("conditions", [])
            changed = False
            for cond in conditions:
                if set_status_condition(stored, cond):
                    changed = True
            return changed

        try:
            await self.kube.mutate_with_retry(ESC_KIND, name, apply, status=True)
        except Exception as e:
            return from_client_error(e, "failed to update %s status", name)
        return None

    async def update_image_status(self, esc: Dict[str, Any], images: ImageConfig) -> None:
        """Record the operand images in status when they differ."""
        name = object_key(esc)[0]

        def apply(current: Dict[str, Any]) -> bool:
            status = current.setdefault("status", {})
            changed = False
            for field, value in (
                ("externalSecretsImage", images.external_secrets_image),
                ("bitwardenSDKServerImage", images.bitwarden_sdk_server_image),
            ):
                if status.get(field, "") != value:
                    status[field] = value
                    changed = True
            return changed

        try:
            await self.kube.mutate_with_retry(ESC_KIND, name, apply, status=True)
        except Exception as e:
            raise from_client_error(e, "failed to update %s status with image info", name)

    async def mark_processed(self, esc: Dict[str, Any]) -> None:
        name = object_key(esc)[0]

        def apply(current: Dict[str, Any]) -> bool:
            annotations = current.setdefault("metadata", {}).setdefault("annotations", {})
            if annotations.get(PROCESSED_ANNOTATION) == "true":
                return False
            annotations[PROCESSED_ANNOTATION] = "true"
            return True

        try:
            await self.kube.mutate_with_retry(ESC_KIND, name, apply)
        except Exception as e:
            raise from_client_error(e, "failed to update processed annotation to %s", name)

    async def cleanup(self, esc: Dict[str, Any]) -> bool:
        """
        Cleanup callback for a terminating config.

        Managed objects are left in place; the user is told to remove them.
        """
        name = object_key(esc)[0]
        await self.recorder.eventf(
            esc,
            EventType.WARNING,
            "RemoveDeployment",
            "%s %s marked for deletion, remove reference in "
            "deployment and remove all resources created for deployment",
            name,
            RESOURCE_NAME,
        )
        return False
