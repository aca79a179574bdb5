"""
Schema Validation - Validation of user-supplied pod scheduling settings.

Resources, affinity, tolerations and node selectors copied from a custom
resource into a workload are checked structurally with JSON Schema and
then semantically (quantities, label syntax, operator/value pairing) so a
bad value is reported with its field path before anything is written.
"""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

QUANTITY_SCHEMA = {"type": ["string", "number"]}

RESOURCES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "limits": {"type": "object", "additionalProperties": QUANTITY_SCHEMA},
        "requests": {"type": "object", "additionalProperties": QUANTITY_SCHEMA},
        "claims": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name"],
                "properties": {"name": {"type": "string", "minLength": 1}},
            },
        },
    },
    "additionalProperties": False,
}

_LABEL_SELECTOR_REQUIREMENT = {
    "type": "object",
    "required": ["key", "operator"],
    "properties": {
        "key": {"type": "string"},
        "operator": {"enum": ["In", "NotIn", "Exists", "DoesNotExist"]},
        "values": {"type": "array", "items": {"type": "string"}},
    },
}

_LABEL_SELECTOR = {
    "type": "object",
    "properties": {
        "matchLabels": {"type": "object", "additionalProperties": {"type": "string"}},
        "matchExpressions": {"type": "array", "items": _LABEL_SELECTOR_REQUIREMENT},
    },
    "additionalProperties": False,
}

_NODE_SELECTOR_REQUIREMENT = {
    "type": "object",
    "required": ["key", "operator"],
    "properties": {
        "key": {"type": "string"},
        "operator": {"enum": ["In", "NotIn", "Exists", "DoesNotExist", "Gt", "Lt"]},
        "values": {"type": "array", "items": {"type": "string"}},
    },
}

_NODE_SELECTOR_TERM = {
    "type": "object",
    "properties": {
        "matchExpressions": {"type": "array", "items": _NODE_SELECTOR_REQUIREMENT},
        "matchFields": {"type": "array", "items": _NODE_SELECTOR_REQUIREMENT},
    },
    "additionalProperties": False,
}

_POD_AFFINITY_TERM = {
    "type": "object",
    "required": ["topologyKey"],
    "properties": {
        "labelSelector": _LABEL_SELECTOR,
        "namespaceSelector": _LABEL_SELECTOR,
        "namespaces": {"type": "array", "items": {"type": "string"}},
        "topologyKey": {"type": "string", "minLength": 1},
        "matchLabelKeys": {"type": "array", "items": {"type": "string"}},
        "mismatchLabelKeys": {"type": "array", "items": {"type": "string"}},
    },
}

_WEIGHTED_POD_AFFINITY_TERM = {
    "type": "object",
    "required": ["weight", "podAffinityTerm"],
    "properties": {
        "weight": {"type": "integer", "minimum": 1, "maximum": 100},
        "podAffinityTerm": _POD_AFFINITY_TERM,
    },
}

_POD_AFFINITY = {
    "type": "object",
    "properties": {
        "requiredDuringSchedulingIgnoredDuringExecution": {
            "type": "array",
            "items": _POD_AFFINITY_TERM,
        },
        "preferredDuringSchedulingIgnoredDuringExecution": {
            "type": "array",
            "items": _WEIGHTED_POD_AFFINITY_TERM,
        },
    },
    "additionalProperties": False,
}

AFFINITY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "nodeAffinity": {
            "type": "object",
            "properties": {
                "requiredDuringSchedulingIgnoredDuringExecution": {
                    "type": "object",
                    "required": ["nodeSelectorTerms"],
                    "properties": {
                        "nodeSelectorTerms": {
                            "type": "array",
                            "minItems": 1,
                            "items": _NODE_SELECTOR_TERM,
                        }
                    },
                },
                "preferredDuringSchedulingIgnoredDuringExecution": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["weight", "preference"],
                        "properties": {
                            "weight": {"type": "integer", "minimum": 1, "maximum": 100},
                            "preference": _NODE_SELECTOR_TERM,
                        },
                    },
                },
            },
            "additionalProperties": False,
        },
        "podAffinity": _POD_AFFINITY,
        "podAntiAffinity": _POD_AFFINITY,
    },
    "additionalProperties": False,
}

TOLERATIONS_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "key": {"type": "string"},
            "operator": {"enum": ["Exists", "Equal", ""]},
            "value": {"type": "string"},
            "effect": {"enum": ["NoSchedule", "PreferNoSchedule", "NoExecute", ""]},
            "tolerationSeconds": {"type": "integer"},
        },
        "additionalProperties": False,
    },
}

NODE_SELECTOR_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": {"type": "string"},
}

_QUANTITY_RE = re.compile(r"^([+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+))([eE][+-]?[0-9]+|[a-zA-Z]*)$")
_BINARY_SUFFIXES = {"Ki": 1, "Mi": 2, "Gi": 3, "Ti": 4, "Pi": 5, "Ei": 6}
_DECIMAL_SUFFIXES = {
    "n": -9,
    "u": -6,
    "m": -3,
    "": 0,
    "k": 3,
    "M": 6,
    "G": 9,
    "T": 12,
    "P": 15,
    "E": 18,
}

_NAME_RE = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_DNS_SUBDOMAIN_RE = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
_STANDARD_RESOURCES = {"cpu", "memory", "ephemeral-storage", "storage"}


def parse_quantity(value: Any) -> Decimal:
    """
    Parse a Kubernetes resource quantity (``100m``, ``1Gi``, ``1e3``).

    Raises:
        ValueError: If the value is not a valid quantity.
    """
    if isinstance(value, bool):
        raise ValueError(f"quantities must match the regular expression: {value!r}")
    if isinstance(value, (int, float)):
        return Decimal(str(value))

    match = _QUANTITY_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"quantities must match the regular expression: {value!r}")
    number, suffix = match.groups()
    try:
        base = Decimal(number)
    except InvalidOperation:
        raise ValueError(f"quantities must match the regular expression: {value!r}")

    if suffix in _BINARY_SUFFIXES:
        return base * (Decimal(1024) ** _BINARY_SUFFIXES[suffix])
    if suffix in _DECIMAL_SUFFIXES:
        return base * (Decimal(10) ** _DECIMAL_SUFFIXES[suffix])
    if re.match(r"^[eE][+-]?[0-9]+$", suffix):
        return base * (Decimal(10) ** int(suffix[1:]))
    raise ValueError(f"quantities must match the regular expression: {value!r}")


def qualified_name_errors(key: str) -> List[str]:
    """Check a label key: an optional DNS subdomain prefix and a name."""
    errors = []
    prefix, _, name = key.rpartition("/")
    if "/" in key:
        if not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN_RE.match(prefix):
            errors.append(f"prefix part of {key!r} must be a DNS subdomain")
    if not name:
        errors.append("name part must be non-empty")
    elif len(name) > 63:
        errors.append("name part must be no more than 63 characters")
    elif not _NAME_RE.match(name):
        errors.append(
            f"name part of {key!r} must consist of alphanumeric characters, "
            "'-', '_' or '.', and must start and end with an alphanumeric character"
        )
    return errors


def label_value_errors(value: str) -> List[str]:
    if value == "":
        return []
    if len(value) > 63:
        return ["must be no more than 63 characters"]
    if not _NAME_RE.match(value):
        return [
            f"a valid label must be an empty string or consist of alphanumeric "
            f"characters, '-', '_' or '.', and must start and end with an "
            f"alphanumeric character: {value!r}"
        ]
    return []


def validate_against_schema(
    value: Any, schema: Dict[str, Any], path: str
) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a JSON Schema.

    Args:
        value: The value to validate
        schema: The JSON Schema to validate against
        path: Field path prefixed to every reported error

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(value), key=lambda e: list(e.absolute_path))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            suffix = "".join(
                f"[{p}]" if isinstance(p, int) else f".{p}" for p in error.absolute_path
            )
            error_messages.append(f"{path}{suffix}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def _raise_if(errors: List[str], what: str) -> None:
    if errors:
        raise ValueError(f"invalid {what}: " + "; ".join(errors))


def validate_resource_requirements(
    resources: Dict[str, Any], path: str = "spec.resources"
) -> None:
    """
    Validate container resource requirements.

    Raises:
        ValueError: With every failing field path when the value is invalid.
    """
    valid, message = validate_against_schema(resources, RESOURCES_SCHEMA, path)
    _raise_if([] if valid else [message], "resource requirements")

    errors: List[str] = []
    parsed: Dict[str, Dict[str, Decimal]] = {"limits": {}, "requests": {}}
    for section in ("limits", "requests"):
        for name, raw in (resources.get(section) or {}).items():
            field_path = f"{path}.{section}[{name}]"
            if name not in _STANDARD_RESOURCES and "/" not in name and not name.startswith(
                "hugepages-"
            ):
                errors.append(f"{field_path}: must be a standard resource type or fully qualified")
                continue
            try:
                quantity = parse_quantity(raw)
            except ValueError as e:
                errors.append(f"{field_path}: {e}")
                continue
            if quantity < 0:
                errors.append(f"{field_path}: must be greater than or equal to 0")
                continue
            parsed[section][name] = quantity

    for name, request in parsed["requests"].items():
        limit = parsed["limits"].get(name)
        if limit is not None and request > limit:
            errors.append(
                f"{path}.requests[{name}]: must be less than or equal to {name} limit of "
                f"{resources['limits'][name]}"
            )
    _raise_if(errors, "resource requirements")


def _node_selector_requirement_errors(req: Dict[str, Any], path: str) -> List[str]:
    errors = [f"{path}.key: {e}" for e in qualified_name_errors(req.get("key", ""))]
    operator = req.get("operator")
    values = req.get("values") or []
    if operator in ("In", "NotIn") and not values:
        errors.append(f"{path}.values: must be specified when `operator` is 'In' or 'NotIn'")
    elif operator in ("Exists", "DoesNotExist") and values:
        errors.append(
            f"{path}.values: may not be specified when `operator` is 'Exists' or 'DoesNotExist'"
        )
    elif operator in ("Gt", "Lt"):
        if len(values) != 1:
            errors.append(f"{path}.values: must be specified single value when `operator` is 'Lt' or 'Gt'")
        elif not re.match(r"^-?[0-9]+$", values[0]):
            errors.append(f"{path}.values[0]: must be an integer")
    return errors


def _label_selector_errors(selector: Optional[Dict[str, Any]], path: str) -> List[str]:
    errors: List[str] = []
    if not selector:
        return errors
    for key, value in (selector.get("matchLabels") or {}).items():
        errors.extend(f"{path}.matchLabels: {e}" for e in qualified_name_errors(key))
        errors.extend(f"{path}.matchLabels[{key}]: {e}" for e in label_value_errors(value))
    for i, req in enumerate(selector.get("matchExpressions") or []):
        req_path = f"{path}.matchExpressions[{i}]"
        errors.extend(f"{req_path}.key: {e}" for e in qualified_name_errors(req.get("key", "")))
        values = req.get("values") or []
        if req.get("operator") in ("In", "NotIn") and not values:
            errors.append(f"{req_path}.values: must be specified when `operator` is 'In' or 'NotIn'")
        elif req.get("operator") in ("Exists", "DoesNotExist") and values:
            errors.append(
                f"{req_path}.values: may not be specified when `operator` is 'Exists' or 'DoesNotExist'"
            )
    return errors


def _pod_affinity_errors(affinity: Optional[Dict[str, Any]], path: str) -> List[str]:
    errors: List[str] = []
    if not affinity:
        return errors
    required = affinity.get("requiredDuringSchedulingIgnoredDuringExecution") or []
    for i, term in enumerate(required):
        term_path = f"{path}.requiredDuringSchedulingIgnoredDuringExecution[{i}]"
        errors.extend(_label_selector_errors(term.get("labelSelector"), f"{term_path}.labelSelector"))
        errors.extend(
            f"{term_path}.topologyKey: {e}" for e in qualified_name_errors(term.get("topologyKey", ""))
        )
    preferred = affinity.get("preferredDuringSchedulingIgnoredDuringExecution") or []
    for i, weighted in enumerate(preferred):
        term = weighted.get("podAffinityTerm") or {}
        term_path = f"{path}.preferredDuringSchedulingIgnoredDuringExecution[{i}].podAffinityTerm"
        errors.extend(_label_selector_errors(term.get("labelSelector"), f"{term_path}.labelSelector"))
        errors.extend(
            f"{term_path}.topologyKey: {e}" for e in qualified_name_errors(term.get("topologyKey", ""))
        )
    return errors


def validate_affinity(affinity: Dict[str, Any], path: str = "spec.affinity.affinity") -> None:
    """
    Validate pod affinity rules.

    Raises:
        ValueError: With every failing field path when the value is invalid.
    """
    valid, message = validate_against_schema(affinity, AFFINITY_SCHEMA, path)
    _raise_if([] if valid else [message], "affinity rules")

    errors: List[str] = []
    node = affinity.get("nodeAffinity") or {}
    required = node.get("requiredDuringSchedulingIgnoredDuringExecution") or {}
    for i, term in enumerate(required.get("nodeSelectorTerms") or []):
        for j, req in enumerate(term.get("matchExpressions") or []):
            errors.extend(
                _node_selector_requirement_errors(
                    req,
                    f"{path}.nodeAffinity.requiredDuringSchedulingIgnoredDuringExecution"
                    f".nodeSelectorTerms[{i}].matchExpressions[{j}]",
                )
            )
    for i, pref in enumerate(node.get("preferredDuringSchedulingIgnoredDuringExecution") or []):
        for j, req in enumerate((pref.get("preference") or {}).get("matchExpressions") or []):
            errors.extend(
                _node_selector_requirement_errors(
                    req,
                    f"{path}.nodeAffinity.preferredDuringSchedulingIgnoredDuringExecution"
                    f"[{i}].preference.matchExpressions[{j}]",
                )
            )
    errors.extend(_pod_affinity_errors(affinity.get("podAffinity"), f"{path}.podAffinity"))
    errors.extend(
        _pod_affinity_errors(affinity.get("podAntiAffinity"), f"{path}.podAntiAffinity")
    )
    _raise_if(errors, "affinity rules")


def validate_tolerations(
    tolerations: List[Dict[str, Any]], path: str = "spec.tolerations.tolerations"
) -> None:
    """
    Validate pod tolerations.

    Raises:
        ValueError: With every failing field path when the value is invalid.
    """
    valid, message = validate_against_schema(tolerations, TOLERATIONS_SCHEMA, path)
    _raise_if([] if valid else [message], "tolerations")

    errors: List[str] = []
    for i, toleration in enumerate(tolerations):
        item_path = f"{path}[{i}]"
        key = toleration.get("key", "")
        operator = toleration.get("operator") or "Equal"
        if key:
            errors.extend(f"{item_path}.key: {e}" for e in qualified_name_errors(key))
        elif operator != "Exists":
            errors.append(f"{item_path}.operator: operator must be Exists when `key` is empty")
        if operator == "Exists" and toleration.get("value"):
            errors.append(f"{item_path}.value: value must be empty when `operator` is 'Exists'")
        elif operator == "Equal":
            errors.extend(
                f"{item_path}.value: {e}" for e in label_value_errors(toleration.get("value", ""))
            )
        if toleration.get("tolerationSeconds") is not None and toleration.get("effect") != "NoExecute":
            errors.append(
                f"{item_path}.effect: effect must be 'NoExecute' when `tolerationSeconds` is set"
            )
    _raise_if(errors, "tolerations")


def validate_node_selector(
    node_selector: Dict[str, str], path: str = "spec.nodeSelector"
) -> None:
    """
    Validate a node selector as a label set.

    Raises:
        ValueError: With every failing field path when the value is invalid.
    """
    valid, message = validate_against_schema(node_selector, NODE_SELECTOR_SCHEMA, path)
    _raise_if([] if valid else [message], "node selector")

    errors: List[str] = []
    for key, value in node_selector.items():
        errors.extend(f"{path}: {e}" for e in qualified_name_errors(key))
        errors.extend(f"{path}[{key}]: {e}" for e in label_value_errors(value))
    _raise_if(errors, "node selector")
