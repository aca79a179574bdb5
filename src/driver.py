"""
Reconciliation Driver - Converges descriptors onto the cluster.

Descriptors are applied strictly in list order and the first failure
stops the pass, because later objects reference names established by
earlier ones. The next pass starts again from the top of the list.
"""

import logging
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from builder import ResourceDescriptor
from errors import from_client_error, is_already_exists, is_not_found
from events import EventRecorder

logger = logging.getLogger(__name__)


class Action(Enum):
    """What applying one descriptor did."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    ABSENT = "absent"


class ReconciliationDriver:
    """Create-or-update-if-changed executor over resource descriptors."""

    def __init__(self, kube, recorder: EventRecorder):
        self.kube = kube
        self.recorder = recorder

    async def apply(
        self,
        owner: Dict[str, Any],
        descriptors: Iterable[ResourceDescriptor],
        first_reconcile: bool = False,
    ) -> List[Tuple[ResourceDescriptor, Action]]:
        """
        Apply every descriptor, stopping at the first failure.

        Args:
            owner: The custom resource that events are recorded on.
            descriptors: Descriptors in apply order.
            first_reconcile: Whether ``owner`` has never been reconciled
                before. Pre-existing objects are then reported with a
                warning event.

        Returns:
            The action taken for each descriptor.

        Raises:
            ReconcileError: The classified failure of the first descriptor
                that could not be applied.
        """
        actions = []
        for descriptor in descriptors:
            if descriptor.delete:
                action = await self._delete(owner, descriptor)
            else:
                action = await self._apply_one(owner, descriptor, first_reconcile)
            actions.append((descriptor, action))
        return actions

    async def _apply_one(
        self,
        owner: Dict[str, Any],
        descriptor: ResourceDescriptor,
        first_reconcile: bool,
    ) -> Action:
        name = descriptor.display_name
        what = descriptor.description
        logger.debug(f"Reconciling {what} resource {name}")

        try:
            exists, live = await self.kube.exists(descriptor.kind, descriptor.name, descriptor.namespace)
        except Exception as e:
            raise from_client_error(e, "failed to check %s %s resource already exists", name, what)

        if exists:
            if first_reconcile and not descriptor.exists_ok:
                await self.recorder.warning(
                    owner,
                    "ResourceAlreadyExists",
                    f"{name} {what} resource already exists, maybe from previous installation",
                )
            if not descriptor.has_changed(live):
                logger.debug(f"{what} resource {name} already exists and is in expected state")
                return Action.UNCHANGED

            logger.info(f"{what} resource {name} has been modified, updating to desired state")
            try:
                await self.kube.update_with_retry(descriptor.update_target(live))
            except Exception as e:
                raise from_client_error(e, "failed to update %s %s resource", name, what)
            await self.recorder.normal(
                owner,
                "Reconciled",
                f"{what} resource {name} reconciled back to desired state",
            )
            return Action.UPDATED

        try:
            await self.kube.create(descriptor.object)
        except Exception as e:
            if descriptor.exists_ok and is_already_exists(e):
                logger.debug(f"{what} resource {name} already exists")
                return Action.UNCHANGED
            raise from_client_error(e, "failed to create %s %s resource", name, what)
        await self.recorder.normal(
            owner, "Reconciled", f"{what} resource {name} created"
        )
        return Action.CREATED

    async def _delete(self, owner: Dict[str, Any], descriptor: ResourceDescriptor) -> Action:
        """Delete an object that must not exist; not found is success."""
        name = descriptor.display_name
        what = descriptor.description
        try:
            await self.kube.delete(descriptor.kind, descriptor.name, descriptor.namespace)
        except Exception as e:
            if is_not_found(e):
                logger.debug(f"{what} resource {name} does not exist, nothing to delete")
                return Action.ABSENT
            raise from_client_error(e, "failed to delete %s %s resource", name, what)
        await self.recorder.normal(
            owner, "Reconciled", f"{what} resource {name} deleted"
        )
        return Action.DELETED
