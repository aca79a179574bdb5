"""
Reconciler Base - Abstract interface for the operator's controllers.

Each reconciler owns the top-level pass for one custom resource. The
controller runtime feeds it keys from watch events and calls reconcile()
with at most one pass in flight per key.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from capabilities import CapabilityRegistry, WatchSpec
from config import Config
from events import EventRecorder

logger = logging.getLogger(__name__)

# Fields the API server rewrites on every write; ignored when comparing
# two observations of the same object.
VOLATILE_METADATA = ("resourceVersion", "managedFields", "generation")


class Outcome(str, Enum):
    """How a pass ended, as seen by the work queue."""

    SUCCESS = "Success"
    RETRY_REQUIRED = "RetryRequired"
    IRRECOVERABLE = "Irrecoverable"


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[int] = None
    outcome: Outcome = Outcome.SUCCESS

    @classmethod
    def done(cls, message: str = "") -> "ReconcileResult":
        return cls(success=True, message=message)

    @classmethod
    def retry(cls, message: str, requeue_after: int) -> "ReconcileResult":
        return cls(
            success=False,
            message=message,
            requeue_after=requeue_after,
            outcome=Outcome.RETRY_REQUIRED,
        )

    @classmethod
    def irrecoverable(cls, message: str) -> "ReconcileResult":
        return cls(success=False, message=message, outcome=Outcome.IRRECOVERABLE)


class ReconcilerContext:
    """
    Shared collaborators handed to every reconciler.

    Built once at startup; the capability registry it carries is read-only.
    """

    def __init__(
        self,
        kube,
        recorder: EventRecorder,
        capabilities: CapabilityRegistry,
        config: Config,
    ):
        self.kube = kube
        self.recorder = recorder
        self.capabilities = capabilities
        self.config = config

    @property
    def requeue_after(self) -> int:
        return self.config.controller.requeue_after_seconds


class Reconciler(ABC):
    """
    Abstract base class for reconcilers.

    Subclasses declare the watches they need, map watch events to work
    queue keys and implement one reconcile pass per key.
    """

    def __init__(self, ctx: ReconcilerContext):
        self.ctx = ctx

    @property
    @abstractmethod
    def name(self) -> str:
        """Controller name, used in logs."""
        pass

    @abstractmethod
    def watches(self) -> List[WatchSpec]:
        """
        Return the watches this reconciler needs.

        Returns:
            WatchSpecs; the runtime shares one stream per distinct spec.
        """
        pass

    @abstractmethod
    def map_event(
        self,
        event_type: str,
        obj: Dict[str, Any],
        old: Optional[Dict[str, Any]],
    ) -> List[str]:
        """
        Map one watch event to work queue keys.

        Args:
            event_type: ADDED, MODIFIED or DELETED.
            obj: The object as delivered by the watch.
            old: The previous observation of the same object, if any.

        Returns:
            Keys to enqueue; empty to ignore the event.
        """
        pass

    @abstractmethod
    async def reconcile(self, key: str) -> ReconcileResult:
        """
        Run one pass for a key.

        Args:
            key: Name of the custom resource to reconcile.

        Returns:
            ReconcileResult; ``requeue_after`` asks for a delayed retry.
        """
        pass

    def initial_keys(self) -> List[str]:
        """Keys to enqueue once when the runtime starts."""
        return []


def _strip(obj: Optional[Dict[str, Any]], drop_status: bool) -> Dict[str, Any]:
    if obj is None:
        return {}
    view = {k: v for k, v in obj.items() if not (drop_status and k == "status")}
    metadata = {
        k: v for k, v in (obj.get("metadata") or {}).items() if k not in VOLATILE_METADATA
    }
    view["metadata"] = metadata
    return view


def status_changed(old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> bool:
    if old is None:
        return True
    return (old.get("status") or {}) != (new.get("status") or {})


def non_status_changed(old: Optional[Dict[str, Any]], new: Dict[str, Any]) -> bool:
    """True unless the only difference between observations is status."""
    if old is None:
        return True
    if (old.get("metadata") or {}).get("generation") != (new.get("metadata") or {}).get(
        "generation"
    ):
        return True
    return _strip(old, True) != _strip(new, True)
