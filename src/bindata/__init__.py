"""
Resource templates for the external-secrets operand.

Templates are YAML files shipped as package data and addressed by their
path relative to this package, e.g.
``external-secrets/resources/deployment_external-secrets.yml``.
"""

import copy
from functools import lru_cache
from importlib import resources
from typing import Any, Dict, List

import yaml


class AssetNotFoundError(KeyError):
    """Raised when a template name is not part of the bundle."""


@lru_cache(maxsize=None)
def asset(name: str) -> bytes:
    """
    Return the raw bytes of a bundled template.

    Asset names are fixed constants, so an unknown name is a programming
    error and raises AssetNotFoundError rather than a reconcile error.
    """
    path = resources.files(__name__)
    for part in name.replace("\\", "/").split("/"):
        path = path.joinpath(part)
    if not path.is_file():
        raise AssetNotFoundError(f"asset {name!r} not found")
    return path.read_bytes()


@lru_cache(maxsize=None)
def _parsed(name: str) -> Dict[str, Any]:
    obj = yaml.safe_load(asset(name))
    if not isinstance(obj, dict):
        raise AssetNotFoundError(f"asset {name!r} does not hold a single object")
    return obj


def decode(name: str) -> Dict[str, Any]:
    """Parse a template into a fresh object dict the caller may mutate."""
    return copy.deepcopy(_parsed(name))


def asset_names() -> List[str]:
    """List every bundled template name."""
    names: List[str] = []
    root = resources.files(__name__)

    def walk(node, prefix: str) -> None:
        for child in node.iterdir():
            rel = f"{prefix}{child.name}"
            if child.is_dir():
                walk(child, rel + "/")
            elif child.name.endswith((".yml", ".yaml")):
                names.append(rel)

    walk(root, "")
    return sorted(names)
