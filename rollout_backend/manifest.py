"""
Decoding of the workload manifest sent with a rollout request.
"""
import copy
import logging
from typing import Any, Dict, List

import yaml

from .errors import BadFormatError, MultipleItemsError
from .kube_types import ObjectKind, Workload

logger = logging.getLogger(__name__)

WORKLOAD_API_VERSION = "apps/v1"


def _load_documents(content: str, source: str) -> List[Dict[str, Any]]:
    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise BadFormatError(f"Sent file {source} has a bad format: {e}") from e

    # A List object is flattened into its items, like kubectl does.
    items: List[Any] = []
    for doc in documents:
        if isinstance(doc, dict) and doc.get("kind") == "List":
            items.extend(doc.get("items") or [])
        else:
            items.append(doc)
    return items


def parse_workload_manifest(content: str, source: str = "manifest", namespace: str = "default") -> Workload:
    """
    Decode a manifest that must hold exactly one Deployment.

    Args:
        content: YAML or JSON text
        source: Name used in error messages
        namespace: Namespace the workload is placed in, overriding the manifest's

    Returns:
        Workload carrying the manifest as its ``body``
    """
    items = _load_documents(content or "", source)
    if not items:
        raise BadFormatError(f"Sent file {source} is empty")
    if len(items) > 1:
        raise MultipleItemsError(f"Sent file {source} specifies multiple items")

    doc = items[0]
    if not isinstance(doc, dict):
        raise BadFormatError(f"Sent file {source} has a bad format")
    if doc.get("kind") != ObjectKind.WORKLOAD.value:
        raise BadFormatError(f"Sent file {source} has a bad format: expected kind "
                             f"{ObjectKind.WORKLOAD.value}, got {doc.get('kind')!r}")

    body = copy.deepcopy(doc)
    body.setdefault("apiVersion", WORKLOAD_API_VERSION)
    metadata = body.get("metadata") or {}
    spec = body.get("spec") or {}
    template = spec.get("template") or {}
    if not isinstance(metadata, dict) or not isinstance(spec, dict) or not isinstance(template, dict):
        raise BadFormatError(f"Sent file {source} has a bad format")

    name = metadata.get("name")
    if not name:
        raise BadFormatError(f"Sent file {source} has no metadata.name")
    metadata["namespace"] = namespace
    body["metadata"] = metadata

    selector = (spec.get("selector") or {}).get("matchLabels") or {}
    template_labels = (template.get("metadata") or {}).get("labels") or {}
    node_selector = (template.get("spec") or {}).get("nodeSelector") or {}
    if not selector:
        raise BadFormatError(f"Sent file {source} has no spec.selector.matchLabels")

    replicas = spec.get("replicas", 1)
    if not isinstance(replicas, int) or isinstance(replicas, bool) or replicas < 0:
        raise BadFormatError(f"Sent file {source} has an invalid replica count: {replicas!r}")

    logger.debug(f"Decoded workload {name} from {source} ({replicas} replicas)")
    return Workload(
        name=name,
        namespace=namespace,
        replicas=replicas,
        selector={str(k): str(v) for k, v in selector.items()},
        template_labels={str(k): str(v) for k, v in template_labels.items()},
        node_selector={str(k): str(v) for k, v in node_selector.items()},
        labels={str(k): str(v) for k, v in (metadata.get("labels") or {}).items()},
        annotations={str(k): str(v) for k, v in (metadata.get("annotations") or {}).items()},
        container_images=[c.get("image", "") for c in (template.get("spec") or {}).get("containers") or []
                          if isinstance(c, dict)],
        body=body,
    )


def with_replicas(workload: Workload, replicas: int) -> Workload:
    """Return a copy of a decoded workload whose manifest declares ``replicas``."""
    body = copy.deepcopy(workload.body) if workload.body else {}
    body.setdefault("spec", {})["replicas"] = replicas
    clone = copy.copy(workload)
    clone.replicas = replicas
    clone.body = body
    return clone


def with_annotations(workload: Workload, annotations: Dict[str, str]) -> Workload:
    """Return a copy of a decoded workload whose manifest carries extra ``annotations``."""
    body = copy.deepcopy(workload.body) if workload.body else {}
    metadata = body.setdefault("metadata", {})
    metadata["annotations"] = dict(metadata.get("annotations") or {}, **annotations)
    clone = copy.copy(workload)
    clone.annotations = dict(workload.annotations, **annotations)
    clone.body = body
    return clone
