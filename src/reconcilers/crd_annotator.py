"""
CRD Annotator - Points cert-manager CA injection at the operand's CRDs.

Runs only when cert-manager is installed. While the config asks for
annotation injection, every operand CRD labelled as a controller CRD gets
the inject-ca-from annotation so cert-manager fills in its conversion
webhook CA bundle.
"""

import logging
from typing import Any, Dict, List, Optional

from builder import CERT_MANAGER_INJECT_CA_FROM_VALUE
from capabilities import WatchSpec
from conditions import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    REASON_COMPLETED,
    REASON_FAILED,
    UPDATE_ANNOTATION,
    Condition,
    set_status_condition,
)
from drift import CERT_MANAGER_INJECT_CA_FROM_ANNOTATION
from errors import aggregate, from_client_error, is_not_found
from kube import object_key
from models import ESC_KIND, ESC_PLURAL, GROUP, SINGLETON_NAME, esc_spec
from reconcilers.base import ReconcileResult, Reconciler

logger = logging.getLogger(__name__)

CONTROLLER_NAME = "crd-annotator"
CRD_KIND = "CustomResourceDefinition"
CRD_LABEL_KEY = "external-secrets.io/component"
CRD_LABEL_VALUE = "controller"
CRD_LABEL_SELECTOR = f"{CRD_LABEL_KEY}={CRD_LABEL_VALUE}"

# Key meaning "every managed CRD", queued when the config itself changes
ALL_CRDS_KEY = "external-secrets-obj"


def _annotations(obj: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return ((obj or {}).get("metadata") or {}).get("annotations") or {}


def _generation(obj: Optional[Dict[str, Any]]) -> Optional[int]:
    return ((obj or {}).get("metadata") or {}).get("generation")


class CRDAnnotator(Reconciler):
    """Adds the cert-manager inject-ca-from annotation to operand CRDs."""

    @property
    def name(self) -> str:
        return CONTROLLER_NAME

    def watches(self) -> List[WatchSpec]:
        return [WatchSpec(CRD_KIND, CRD_LABEL_SELECTOR), WatchSpec(ESC_KIND)]

    def map_event(
        self,
        event_type: str,
        obj: Dict[str, Any],
        old: Optional[Dict[str, Any]],
    ) -> List[str]:
        kind = obj.get("kind")
        if kind == ESC_KIND:
            if event_type == "MODIFIED" and _generation(old) == _generation(obj):
                return []
            return [ALL_CRDS_KEY]
        if kind == CRD_KIND:
            labels = (obj.get("metadata") or {}).get("labels") or {}
            if labels.get(CRD_LABEL_KEY) != CRD_LABEL_VALUE or event_type == "DELETED":
                return []
            if event_type == "MODIFIED" and _annotations(old) == _annotations(obj):
                return []
            return [object_key(obj)[0]]
        return []

    def initial_keys(self) -> List[str]:
        return [ALL_CRDS_KEY]

    async def reconcile(self, key: str) -> ReconcileResult:
        kube = self.ctx.kube
        try:
            esc = await kube.get(ESC_KIND, SINGLETON_NAME)
        except Exception as e:
            if is_not_found(e):
                logger.debug(f"{ESC_PLURAL}.{GROUP} object not found, skipping reconciliation")
                return ReconcileResult.done("config not found")
            message = (
                f"failed to fetch {ESC_PLURAL}.{GROUP} {SINGLETON_NAME!r} "
                f"during reconciliation: {e}"
            )
            logger.error(message)
            return ReconcileResult.retry(message, self.ctx.requeue_after)

        if not esc_spec(esc).inject_annotations_enabled:
            return ReconcileResult.done("annotation injection disabled")

        err: Optional[BaseException] = None
        if key == ALL_CRDS_KEY:
            try:
                await self.annotate_all()
            except Exception as e:
                err = from_client_error(e, "failed while updating annotations in all CRDs")
        else:
            try:
                crd = await kube.get(CRD_KIND, key)
                await self.annotate(crd)
            except Exception as e:
                err = from_client_error(e, "failed to update annotations in %r", key)

        status_err = await self.update_condition(esc, err)
        combined = aggregate([status_err, err])
        if combined is not None:
            logger.error(f"CRD annotation failed: {combined}")
            return ReconcileResult.retry(str(combined), self.ctx.requeue_after)
        return ReconcileResult.done("annotations updated")

    async def annotate(self, crd: Dict[str, Any]) -> bool:
        """Merge-patch the annotation onto one CRD; True if it was missing."""
        if _annotations(crd).get(CERT_MANAGER_INJECT_CA_FROM_ANNOTATION) == (
            CERT_MANAGER_INJECT_CA_FROM_VALUE
        ):
            return False
        name = object_key(crd)[0]
        await self.ctx.kube.patch(
            CRD_KIND,
            name,
            {
                "metadata": {
                    "annotations": {
                        CERT_MANAGER_INJECT_CA_FROM_ANNOTATION: CERT_MANAGER_INJECT_CA_FROM_VALUE
                    }
                }
            },
        )
        logger.info(f"Added {CERT_MANAGER_INJECT_CA_FROM_ANNOTATION} annotation to CRD {name}")
        return True

    async def annotate_all(self) -> int:
        crds = await self.ctx.kube.list(CRD_KIND, label_selector=CRD_LABEL_SELECTOR)
        if not crds:
            logger.info("list query to fetch managed CRD resources returned empty")
            return 0
        patched = 0
        for crd in crds:
            try:
                if await self.annotate(crd):
                    patched += 1
            except Exception as e:
                raise from_client_error(
                    e, "failed to update annotations in %r", object_key(crd)[0]
                )
        return patched

    async def update_condition(
        self, esc: Dict[str, Any], err: Optional[BaseException]
    ) -> Optional[BaseException]:
        generation = _generation(esc) or 0
        if err is not None:
            cond = Condition(
                UPDATE_ANNOTATION,
                CONDITION_FALSE,
                REASON_FAILED,
                f"failed to add annotations: {err}",
                generation,
            )
        else:
            cond = Condition(
                UPDATE_ANNOTATION,
                CONDITION_TRUE,
                REASON_COMPLETED,
                "successfully updated annotations",
                generation,
            )

        def apply(current: Dict[str, Any]) -> bool:
            stored = current.setdefault("status", {}).setdefault("conditions", [])
            return set_status_condition(stored, cond)

        try:
            await self.ctx.kube.mutate_with_retry(ESC_KIND, SINGLETON_NAME, apply, status=True)
        except Exception as e:
            return from_client_error(e, "failed to update %s status", SINGLETON_NAME)
        return None
