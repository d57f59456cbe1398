"""
Label and field selector helpers.
"""
from typing import Dict, Mapping, Optional

# Field selector keys understood by the pod API.
NODE_NAME_FIELD = "spec.nodeName"
NAME_FIELD = "metadata.name"


def to_selector_string(selector: Optional[Mapping[str, str]]) -> Optional[str]:
    """Render a selector map as ``k1=v1,k2=v2`` (sorted), or None when empty."""
    if not selector:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def is_selector_matching(selector: Optional[Mapping[str, str]], labels: Optional[Mapping[str, str]]) -> bool:
    """
    Check whether labels satisfy an equality-based selector.

    An empty selector matches nothing, so an object without a selector never
    claims pods it did not create.
    """
    if not selector:
        return False
    labels = labels or {}
    for key, value in selector.items():
        if labels.get(key) != value:
            return False
    return True


def node_fields(node_name: str) -> Dict[str, str]:
    return {NODE_NAME_FIELD: node_name}


def name_fields(name: str) -> Dict[str, str]:
    return {NAME_FIELD: name}


def parse_selector_string(selector: Optional[str]) -> Dict[str, str]:
    """Inverse of ``to_selector_string`` for equality-based selectors."""
    parsed: Dict[str, str] = {}
    for term in (selector or "").split(","):
        if not term.strip():
            continue
        key, sep, value = term.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Not an equality selector term: {term!r}")
        parsed[key.strip()] = value.strip()
    return parsed
