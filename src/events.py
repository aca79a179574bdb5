"""
Event Recording - Kubernetes events on the resources the operator owns.

Every create, update and already-exists transition is narrated as a core
v1 Event on the owning custom resource plus a log line at a matching
level. Events are best effort: a failed post is logged and never fails a
reconcile pass.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict

from kubernetes_asyncio.client.exceptions import ApiException

logger = logging.getLogger(__name__)

COMPONENT = "external-secrets-operator"


class EventType(Enum):
    """Types of Kubernetes events."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class RecordedEvent:
    """Event emitted for an involved object."""

    event_type: EventType
    reason: str
    message: str
    involved_object: Dict[str, Any]
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    )

    def to_object(self, component: str = COMPONENT) -> Dict[str, Any]:
        """
        Render the event as a core v1 Event object.

        Cluster-scoped involved objects get their events in ``default``.
        """
        namespace = self.involved_object.get("namespace") or "default"
        return {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{self.involved_object.get('name', 'unknown')}.",
                "namespace": namespace,
            },
            "involvedObject": self.involved_object,
            "reason": self.reason,
            "message": self.message,
            "type": self.event_type.value,
            "count": 1,
            "firstTimestamp": self.timestamp,
            "lastTimestamp": self.timestamp,
            "source": {"component": component},
            "reportingComponent": component,
        }

    @classmethod
    def for_object(
        cls,
        obj: Dict[str, Any],
        event_type: EventType,
        reason: str,
        message: str,
    ) -> "RecordedEvent":
        """
        Create an event about an object dict.

        Args:
            obj: The involved object.
            event_type: Normal or Warning.
            reason: Short CamelCase reason.
            message: Human-readable message.

        Returns:
            A new RecordedEvent instance.
        """
        metadata = obj.get("metadata") or {}
        involved = {
            "apiVersion": obj.get("apiVersion", ""),
            "kind": obj.get("kind", ""),
            "name": metadata.get("name", ""),
            "uid": metadata.get("uid", ""),
            "resourceVersion": metadata.get("resourceVersion", ""),
        }
        if metadata.get("namespace"):
            involved["namespace"] = metadata["namespace"]
        return cls(event_type, reason, message, involved)


class EventRecorder:
    """Posts events through a KubeClient and mirrors them to the log."""

    def __init__(self, kube, component: str = COMPONENT, history_size: int = 256):
        self.kube = kube
        self.component = component
        # Most recent events, newest last
        self.history: Deque[RecordedEvent] = deque(maxlen=history_size)

    async def event(
        self,
        obj: Dict[str, Any],
        event_type: EventType,
        reason: str,
        message: str,
    ) -> None:
        """Record an event on ``obj``."""
        recorded = RecordedEvent.for_object(obj, event_type, reason, message)
        self.history.append(recorded)

        name = recorded.involved_object["name"]
        if event_type == EventType.WARNING:
            logger.warning(f"{recorded.involved_object['kind']}/{name} {reason}: {message}")
        else:
            logger.info(f"{recorded.involved_object['kind']}/{name} {reason}: {message}")

        try:
            await self.kube.create(recorded.to_object(self.component))
        except ApiException as e:
            logger.warning(f"Failed to post event {reason} for {name}: {e.status} {e.reason}")
        except Exception as e:
            logger.warning(f"Failed to post event {reason} for {name}: {e}")

    async def eventf(
        self,
        obj: Dict[str, Any],
        event_type: EventType,
        reason: str,
        message: str,
        *args,
    ) -> None:
        """Record an event with a printf-style message."""
        await self.event(obj, event_type, reason, message % args if args else message)

    async def normal(self, obj: Dict[str, Any], reason: str, message: str) -> None:
        await self.event(obj, EventType.NORMAL, reason, message)

    async def warning(self, obj: Dict[str, Any], reason: str, message: str) -> None:
        await self.event(obj, EventType.WARNING, reason, message)
