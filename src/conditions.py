"""
Status Conditions - Condition upsert and cross-controller status fan-in.

Conditions live in plain status dicts (``status.conditions``) so the same
helpers serve every custom resource. Each helper reports whether it
changed anything, and callers only persist status when it did.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Condition types
DEGRADED = "Degraded"
READY = "Ready"
UPDATE_ANNOTATION = "UpdateAnnotation"

# Condition reasons
REASON_FAILED = "Failed"
REASON_READY = "Ready"
REASON_IN_PROGRESS = "Progressing"
REASON_COMPLETED = "Completed"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"


def now() -> str:
    """Current time in the RFC 3339 form the API server stores."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Condition:
    """A typed health entry, unique by type within its holder."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    observed_generation: int = 0

    def to_dict(self, last_transition_time: Optional[str] = None) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": last_transition_time or now(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", CONDITION_UNKNOWN),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=data.get("observedGeneration", 0) or 0,
        )


def find_status_condition(
    conditions: Optional[List[Dict[str, Any]]], condition_type: str
) -> Optional[Dict[str, Any]]:
    """Return the condition of the given type, if present."""
    for cond in conditions or []:
        if cond.get("type") == condition_type:
            return cond
    return None


def set_status_condition(conditions: List[Dict[str, Any]], new: Condition) -> bool:
    """
    Insert or update a condition in place.

    The entry is rewritten only when status, reason, message or observed
    generation differ from the stored value. The transition time moves
    only when the status itself flips.

    Args:
        conditions: The condition list to modify.
        new: The desired condition value.

    Returns:
        True if the list was modified.
    """
    existing = find_status_condition(conditions, new.type)
    if existing is None:
        conditions.append(new.to_dict())
        return True

    changed = False
    if existing.get("status") != new.status:
        existing["status"] = new.status
        existing["lastTransitionTime"] = now()
        changed = True
    if existing.get("reason", "") != new.reason:
        existing["reason"] = new.reason
        changed = True
    if existing.get("message", "") != new.message:
        existing["message"] = new.message
        changed = True
    if existing.get("observedGeneration", 0) != new.observed_generation:
        existing["observedGeneration"] = new.observed_generation
        changed = True
    return changed


def get_controller_status(status: Dict[str, Any], controller_name: str) -> Dict[str, Any]:
    """
    Return the named controller bucket, creating it in place when absent.

    The returned dict is the stored entry, so edits land in ``status``.
    """
    buckets = status.setdefault("controllerStatuses", [])
    for bucket in buckets:
        if bucket.get("name") == controller_name:
            bucket.setdefault("conditions", [])
            return bucket
    bucket = {"name": controller_name, "conditions": []}
    buckets.append(bucket)
    return bucket


def update_controller_status(
    status: Dict[str, Any],
    controller_name: str,
    conditions: List[Dict[str, Any]],
    observed_generation: int,
) -> bool:
    """
    Republish a child resource's conditions inside a named bucket.

    Each child condition is reduced to type, status and message and
    upserted by type. An entry is rewritten only when its status or
    message changed.

    Args:
        status: The parent resource's status dict, modified in place.
        controller_name: Identity of the child controller.
        conditions: The child's status conditions.
        observed_generation: The child's generation that was evaluated.

    Returns:
        True if the bucket set differs from what was stored.
    """
    had_bucket = any(
        b.get("name") == controller_name for b in status.get("controllerStatuses") or []
    )
    bucket = get_controller_status(status, controller_name)
    changed = not had_bucket

    for child in conditions:
        found = False
        for entry in bucket["conditions"]:
            if entry.get("type") != child.get("type"):
                continue
            found = True
            if entry.get("status") != child.get("status") or entry.get(
                "message", ""
            ) != child.get("message", ""):
                entry["status"] = child.get("status")
                entry["message"] = child.get("message", "")
                changed = True
        if not found:
            bucket["conditions"].append(
                {
                    "type": child.get("type"),
                    "status": child.get("status"),
                    "message": child.get("message", ""),
                }
            )
            changed = True

    if bucket.get("observedGeneration") != observed_generation:
        bucket["observedGeneration"] = observed_generation
        changed = True

    if changed:
        status["lastTransitionTime"] = now()
    return changed
