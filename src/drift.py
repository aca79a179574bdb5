"""
Drift Detection - Per-kind comparison of live objects against desired ones.

Each predicate compares only the fields this operator renders. Fields the
API server or other controllers populate (defaulted ports, injected CA
bundles, status) are outside the comparison so the operator never fights
another actor. An empty or unset desired value means "no opinion".

Objects are JSON-shaped dicts with camelCase keys.
"""

from typing import Any, Callable, Dict, List, Optional

# Map-valued keys compared as whole sets: removing an entry is drift.
EXACT_MAP_KEYS = frozenset(
    {"labels", "matchLabels", "nodeSelector", "selector", "limits", "requests"}
)

CERT_MANAGER_INJECT_CA_FROM_ANNOTATION = "cert-manager.io/inject-ca-from"


def is_empty(value: Any) -> bool:
    return value is None or value == {} or value == [] or value == ""


def normalize(value: Any) -> Any:
    """Drop empty members recursively so unset and empty compare equal."""
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            item = normalize(item)
            if not is_empty(item):
                out[key] = item
        return out
    if isinstance(value, list):
        return [normalize(item) for item in value]
    return value


def semantic_equal(a: Any, b: Any) -> bool:
    return normalize(a) == normalize(b)


def covers(desired: Any, live: Any) -> bool:
    """
    Check that ``live`` carries every value set in ``desired``.

    Extra struct fields on ``live`` are ignored since the server defaults
    them. Lists must have the same length. Keys in EXACT_MAP_KEYS hold
    user maps and must match exactly.
    """
    if is_empty(desired):
        return True
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        for key, want in desired.items():
            if is_empty(want):
                continue
            have = live.get(key)
            if key in EXACT_MAP_KEYS:
                if not semantic_equal(want, have):
                    return False
            elif not covers(want, have):
                return False
        return True
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(covers(d, l) for d, l in zip(desired, live))
    return desired == live


def _get(obj: Optional[Dict[str, Any]], *path: str) -> Any:
    current: Any = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def object_metadata_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    """Label-set equality, the check shared by every kind."""
    return not semantic_equal(
        _get(desired, "metadata", "labels"), _get(live, "metadata", "labels")
    )


def certificate_spec_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    return not covers(desired.get("spec"), live.get("spec"))


def role_rules_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    return not covers(desired.get("rules"), live.get("rules"))


def role_binding_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    return not covers(desired.get("roleRef"), live.get("roleRef")) or not covers(
        desired.get("subjects"), live.get("subjects")
    )


def service_spec_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    want = desired.get("spec") or {}
    have = live.get("spec") or {}
    if want.get("type") and want.get("type") != have.get("type"):
        return True
    if not covers(want.get("ports"), have.get("ports")):
        return True
    return not semantic_equal(want.get("selector"), have.get("selector"))


def network_policy_spec_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    want = desired.get("spec") or {}
    have = live.get("spec") or {}
    # An empty selector matches every pod, so it is compared exactly.
    if not semantic_equal(want.get("podSelector"), have.get("podSelector")):
        return True
    if not semantic_equal(want.get("policyTypes"), have.get("policyTypes")):
        return True
    # An empty rule list is a real policy for network policies.
    for key in ("ingress", "egress"):
        if len(want.get(key) or []) != len(have.get(key) or []):
            return True
        if not covers(want.get(key), have.get(key)):
            return True
    return False


def validating_webhook_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    want_hooks = desired.get("webhooks") or []
    have_hooks = live.get("webhooks") or []
    if len(want_hooks) != len(have_hooks):
        return True

    want_ann = _get(desired, "metadata", "annotations") or {}
    if CERT_MANAGER_INJECT_CA_FROM_ANNOTATION in want_ann:
        have_ann = _get(live, "metadata", "annotations") or {}
        if (
            want_ann[CERT_MANAGER_INJECT_CA_FROM_ANNOTATION]
            != have_ann.get(CERT_MANAGER_INJECT_CA_FROM_ANNOTATION)
        ):
            return True

    live_by_name = {hook.get("name"): hook for hook in have_hooks}
    for hook in want_hooks:
        current = live_by_name.get(hook.get("name"))
        if current is None:
            return True
        if hook.get("sideEffects") != current.get("sideEffects"):
            return True
        if hook.get("timeoutSeconds") is not None and hook.get(
            "timeoutSeconds"
        ) != current.get("timeoutSeconds"):
            return True
        if not semantic_equal(
            hook.get("admissionReviewVersions"), current.get("admissionReviewVersions")
        ):
            return True
        for field in ("name", "path"):
            if _get(hook, "clientConfig", "service", field) != _get(
                current, "clientConfig", "service", field
            ):
                return True
        if not covers(hook.get("rules"), current.get("rules")):
            return True
    return False


def volumes_equal(desired: List[Dict[str, Any]], live: List[Dict[str, Any]]) -> bool:
    desired = desired or []
    live = live or []
    if len(desired) != len(live):
        return False

    live_by_name = {vol.get("name"): vol for vol in live}
    for vol in desired:
        current = live_by_name.get(vol.get("name"))
        if current is None:
            return False
        if vol.get("configMap") is not None:
            if current.get("configMap") is None:
                return False
            if vol["configMap"].get("name") != current["configMap"].get("name"):
                return False
        if vol.get("secret") is not None:
            if current.get("secret") is None:
                return False
            if vol["secret"].get("secretName") != current["secret"].get("secretName"):
                return False
            if not covers(vol["secret"].get("items"), current["secret"].get("items")):
                return False
            if len(vol["secret"].get("items") or []) != len(
                current["secret"].get("items") or []
            ):
                return False
        if vol.get("emptyDir") is not None and current.get("emptyDir") is None:
            return False
    return True


def container_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    if (desired.get("args") or []) != (live.get("args") or []):
        return True
    if desired.get("image") != live.get("image"):
        return True
    if desired.get("imagePullPolicy") and desired.get("imagePullPolicy") != live.get(
        "imagePullPolicy"
    ):
        return True

    want_env = desired.get("env") or []
    have_env = live.get("env") or []
    if len(want_env) != len(have_env) or not covers(want_env, have_env):
        return True

    want_ports = desired.get("ports") or []
    have_ports = live.get("ports") or []
    if len(want_ports) != len(have_ports):
        return True
    want_numbers = {p.get("containerPort") for p in want_ports}
    if any(p.get("containerPort") not in want_numbers for p in have_ports):
        return True

    want_probe = desired.get("readinessProbe")
    have_probe = live.get("readinessProbe")
    if (want_probe is None) != (have_probe is None):
        return True
    if want_probe is not None:
        want_get = want_probe.get("httpGet")
        have_get = have_probe.get("httpGet")
        if (want_get is None) != (have_get is None):
            return True
        if want_get is not None and want_get.get("path") != have_get.get("path"):
            return True

    if desired.get("securityContext") is not None and not covers(
        desired["securityContext"], live.get("securityContext")
    ):
        return True

    want_mounts = desired.get("volumeMounts") or []
    have_mounts = live.get("volumeMounts") or []
    if len(want_mounts) != len(have_mounts) or not covers(want_mounts, have_mounts):
        return True

    return not semantic_equal(desired.get("resources"), live.get("resources"))


def _containers_modified(
    desired: List[Dict[str, Any]], live: List[Dict[str, Any]]
) -> bool:
    desired = desired or []
    live = live or []
    if len(desired) != len(live):
        return True
    live_by_name = {c.get("name"): c for c in live}
    for container in desired:
        current = live_by_name.get(container.get("name"))
        if current is None or container_modified(container, current):
            return True
    return False


def deployment_spec_modified(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    want = desired.get("spec") or {}
    have = live.get("spec") or {}
    want_pod = _get(want, "template", "spec") or {}
    have_pod = _get(have, "template", "spec") or {}

    if want.get("replicas") is not None and want["replicas"] != have.get("replicas"):
        return True

    if want_pod.get("serviceAccountName") != have_pod.get("serviceAccountName"):
        return True
    if want_pod.get("automountServiceAccountToken") is not None and want_pod[
        "automountServiceAccountToken"
    ] != have_pod.get("automountServiceAccountToken"):
        return True

    if want_pod.get("dnsPolicy") and want_pod["dnsPolicy"] != have_pod.get("dnsPolicy"):
        return True

    want_labels = _get(want, "template", "metadata", "labels")
    if not is_empty(want_labels) and not semantic_equal(
        want_labels, _get(have, "template", "metadata", "labels")
    ):
        return True

    if not volumes_equal(want_pod.get("volumes"), have_pod.get("volumes")):
        return True

    for key in ("nodeSelector", "affinity", "tolerations"):
        if not is_empty(want_pod.get(key)) and not semantic_equal(
            want_pod.get(key), have_pod.get(key)
        ):
            return True

    if want.get("revisionHistoryLimit") is not None and want[
        "revisionHistoryLimit"
    ] != have.get("revisionHistoryLimit"):
        return True

    if _containers_modified(want_pod.get("containers"), have_pod.get("containers")):
        return True
    return _containers_modified(
        want_pod.get("initContainers"), have_pod.get("initContainers")
    )


SpecPredicate = Callable[[Dict[str, Any], Dict[str, Any]], bool]

# Closed table of kinds that carry a spec comparison. Kinds handled as
# create-only or metadata-only are compared on labels alone.
SPEC_PREDICATES: Dict[str, SpecPredicate] = {
    "Certificate": certificate_spec_modified,
    "ClusterRole": role_rules_modified,
    "ClusterRoleBinding": role_binding_modified,
    "Deployment": deployment_spec_modified,
    "Role": role_rules_modified,
    "RoleBinding": role_binding_modified,
    "Service": service_spec_modified,
    "NetworkPolicy": network_policy_spec_modified,
    "ValidatingWebhookConfiguration": validating_webhook_modified,
}

METADATA_ONLY_KINDS = frozenset({"Secret", "ConfigMap", "ServiceAccount", "Namespace"})


def has_object_changed(desired: Dict[str, Any], live: Dict[str, Any]) -> bool:
    """
    Report whether ``live`` has drifted from ``desired``.

    Raises:
        ValueError: If the kinds differ or the kind is not supported.
    """
    kind = desired.get("kind")
    if live.get("kind") and live.get("kind") != kind:
        raise ValueError(
            f"both objects to be compared must be of same kind: {kind} != {live.get('kind')}"
        )
    if kind in SPEC_PREDICATES:
        modified = SPEC_PREDICATES[kind](desired, live)
    elif kind in METADATA_ONLY_KINDS:
        modified = False
    else:
        raise ValueError(f"unsupported object kind: {kind}")
    return modified or object_metadata_modified(desired, live)
