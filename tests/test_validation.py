"""Unit tests for validation.py - Scheduling and resource overlay validation."""

from decimal import Decimal

import pytest

from validation import (
    parse_quantity,
    validate_affinity,
    validate_against_schema,
    validate_node_selector,
    validate_resource_requirements,
    validate_tolerations,
)


class TestParseQuantity:
    """Tests for resource quantity parsing."""

    def test_binary_suffix(self):
        assert parse_quantity("1Gi") == Decimal(1024**3)

    def test_decimal_suffix(self):
        assert parse_quantity("100m") == Decimal("0.1")

    def test_plain_number(self):
        assert parse_quantity(2) == Decimal(2)

    def test_exponent(self):
        assert parse_quantity("1e3") == Decimal(1000)

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_quantity("lots")


class TestValidateAgainstSchema:
    """Tests for the JSON Schema wrapper."""

    def test_valid(self):
        valid, message = validate_against_schema({"a": 1}, {"type": "object"}, "spec")
        assert valid
        assert message is None

    def test_invalid_reports_path(self):
        schema = {"type": "object", "properties": {"a": {"type": "string"}}}
        valid, message = validate_against_schema({"a": 1}, schema, "spec")
        assert not valid
        assert message.startswith("spec.a:")


class TestValidateResourceRequirements:
    """Tests for resource requirement validation."""

    def test_valid(self):
        validate_resource_requirements(
            {"limits": {"cpu": "500m", "memory": "256Mi"}, "requests": {"cpu": "100m"}}
        )

    def test_request_above_limit(self):
        with pytest.raises(ValueError, match="invalid resource requirements"):
            validate_resource_requirements(
                {"limits": {"memory": "128Mi"}, "requests": {"memory": "1Gi"}}
            )

    def test_unknown_resource_name(self):
        with pytest.raises(ValueError, match="standard resource type"):
            validate_resource_requirements({"limits": {"gpus": "1"}})

    def test_bad_quantity(self):
        with pytest.raises(ValueError):
            validate_resource_requirements({"limits": {"cpu": "fast"}})


class TestValidateAffinity:
    """Tests for affinity validation."""

    def test_valid_node_affinity(self):
        validate_affinity(
            {
                "nodeAffinity": {
                    "requiredDuringSchedulingIgnoredDuringExecution": {
                        "nodeSelectorTerms": [
                            {
                                "matchExpressions": [
                                    {
                                        "key": "kubernetes.io/os",
                                        "operator": "In",
                                        "values": ["linux"],
                                    }
                                ]
                            }
                        ]
                    }
                }
            }
        )

    def test_in_without_values(self):
        with pytest.raises(ValueError, match="invalid affinity rules"):
            validate_affinity(
                {
                    "nodeAffinity": {
                        "requiredDuringSchedulingIgnoredDuringExecution": {
                            "nodeSelectorTerms": [
                                {"matchExpressions": [{"key": "zone", "operator": "In"}]}
                            ]
                        }
                    }
                }
            )


class TestValidateTolerations:
    """Tests for toleration validation."""

    def test_valid(self):
        validate_tolerations(
            [{"key": "node-role.kubernetes.io/infra", "operator": "Exists", "effect": "NoSchedule"}]
        )

    def test_exists_with_value(self):
        with pytest.raises(ValueError, match="value must be empty"):
            validate_tolerations([{"key": "a", "operator": "Exists", "value": "b"}])

    def test_toleration_seconds_needs_no_execute(self):
        with pytest.raises(ValueError, match="NoExecute"):
            validate_tolerations(
                [{"key": "a", "operator": "Equal", "value": "b", "tolerationSeconds": 30}]
            )


class TestValidateNodeSelector:
    """Tests for node selector validation."""

    def test_valid(self):
        validate_node_selector({"node-role.kubernetes.io/worker": ""})

    def test_invalid_value(self):
        with pytest.raises(ValueError, match="invalid node selector"):
            validate_node_selector({"zone": "not valid!"})
