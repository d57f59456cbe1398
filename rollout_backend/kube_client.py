"""
Kubernetes client for rollout operations.

``ClusterFacade`` is the interface the rollout engine consumes; ``KubeClient``
implements it on top of the official ``kubernetes`` client.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from .errors import BadFormatError, ClusterAPIError, ConflictError, NotFoundError, RolloutError, SubscriptionError
from .kube_types import ChangeEvent, EventType, Node, ObjectKind, Pod, PodPhase, Service, Workload
from .selectors import to_selector_string

logger = logging.getLogger(__name__)

WATCH_REQUEST_GRACE_SECS = 5


class Subscription(ABC):
    """An open change feed. Iterating yields ``ChangeEvent`` until the feed ends."""

    @abstractmethod
    def __iter__(self) -> Iterator[ChangeEvent]:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class ClusterFacade(ABC):
    """Object CRUD and change subscriptions for workloads, pods, nodes and services.

    Nodes are cluster scoped; the ``namespace`` argument is ignored for them.
    """

    @abstractmethod
    def get(self, kind: ObjectKind, namespace: str, name: str) -> Any:
        """Return the object or raise ``NotFoundError``."""

    @abstractmethod
    def list(self, kind: ObjectKind, namespace: str, labels: Optional[Mapping[str, str]] = None,
             fields: Optional[Mapping[str, str]] = None) -> List[Any]:
        """Return the objects matching the label and field selectors."""

    @abstractmethod
    def create(self, kind: ObjectKind, namespace: str, obj: Any) -> Any:
        """Create the object or raise ``ConflictError`` if it already exists."""

    @abstractmethod
    def update(self, kind: ObjectKind, namespace: str, obj: Any) -> Any:
        """Write back a previously read object, raising ``ConflictError`` when it changed meanwhile."""

    @abstractmethod
    def delete(self, kind: ObjectKind, namespace: str, name: str, grace_period_seconds: Optional[int] = None,
               propagation_policy: Optional[str] = None) -> None:
        """Delete the object or raise ``NotFoundError``."""

    @abstractmethod
    def watch(self, kind: ObjectKind, namespace: str, labels: Optional[Mapping[str, str]] = None,
              fields: Optional[Mapping[str, str]] = None, timeout_seconds: Optional[int] = None) -> Subscription:
        """Open a change subscription scoped by label and field selectors."""


def translate_api_exception(e: ApiException, action: str) -> RolloutError:
    """Map an ``ApiException`` onto the rollout error taxonomy."""
    message = f"{action} failed: {e.status} {e.reason}"
    if e.status == 404:
        return NotFoundError(message, detail=e.body)
    if e.status == 409:
        return ConflictError(message, detail=e.body)
    return ClusterAPIError(message, detail=e.body)


def _workload_from_api(deployment: client.V1Deployment) -> Workload:
    spec = deployment.spec
    template = spec.template
    return Workload(
        name=deployment.metadata.name,
        namespace=deployment.metadata.namespace,
        replicas=spec.replicas or 0,
        selector=dict(spec.selector.match_labels or {}) if spec.selector else {},
        template_labels=dict(template.metadata.labels or {}) if template.metadata else {},
        node_selector=dict(template.spec.node_selector or {}) if template.spec else {},
        labels=dict(deployment.metadata.labels or {}),
        annotations=dict(deployment.metadata.annotations or {}),
        container_images=[container.image for container in (template.spec.containers or [])] if template.spec else [],
        status_replicas=(deployment.status.replicas or 0) if deployment.status else 0,
        resource_version=deployment.metadata.resource_version,
    )


def _pod_from_api(pod: client.V1Pod) -> Pod:
    status = pod.status
    ready = False
    restart_count = 0
    if status:
        for condition in status.conditions or []:
            if condition.type == "Ready":
                ready = condition.status == "True"
        restart_count = sum(cs.restart_count or 0 for cs in status.container_statuses or [])
    return Pod(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        status=(status.phase if status and status.phase else PodPhase.UNKNOWN.value),
        labels=dict(pod.metadata.labels or {}),
        ready=ready,
        node_name=pod.spec.node_name if pod.spec else None,
        restart_count=restart_count,
        terminating=pod.metadata.deletion_timestamp is not None,
        resource_version=pod.metadata.resource_version,
        creation_timestamp=pod.metadata.creation_timestamp,
    )


def _node_from_api(node: client.V1Node) -> Node:
    return Node(
        name=node.metadata.name,
        labels=dict(node.metadata.labels or {}),
        unschedulable=bool(node.spec.unschedulable) if node.spec else False,
        resource_version=node.metadata.resource_version,
    )


def _service_from_api(service: client.V1Service) -> Service:
    spec = service.spec
    return Service(
        name=service.metadata.name,
        namespace=service.metadata.namespace,
        selector=dict(spec.selector or {}) if spec else {},
        labels=dict(service.metadata.labels or {}),
        ports=[{"port": port.port, "protocol": port.protocol} for port in (spec.ports or [])] if spec else [],
        resource_version=service.metadata.resource_version,
    )


_CONVERTERS: Dict[ObjectKind, Callable[[Any], Any]] = {
    ObjectKind.WORKLOAD: _workload_from_api,
    ObjectKind.POD: _pod_from_api,
    ObjectKind.NODE: _node_from_api,
    ObjectKind.SERVICE: _service_from_api,
}


class KubeSubscription(Subscription):
    """Change feed backed by ``kubernetes.watch.Watch``."""

    def __init__(self, list_fn: Callable, kind: ObjectKind, **kwargs):
        self._watch = watch.Watch()
        self._list_fn = list_fn
        self._kind = kind
        self._kwargs = kwargs

    def __iter__(self) -> Iterator[ChangeEvent]:
        convert = _CONVERTERS[self._kind]
        try:
            for event in self._watch.stream(self._list_fn, **self._kwargs):
                event_type = EventType(event["type"])
                if event_type == EventType.ERROR:
                    yield ChangeEvent(type=event_type, message=str(event.get("raw_object") or event.get("object")))
                    continue
                yield ChangeEvent(type=event_type, object=convert(event["object"]))
        except ApiException as e:
            raise SubscriptionError(f"Watch on {self._kind.value} failed: {e.status} {e.reason}", detail=e.body) from e

    def close(self) -> None:
        self._watch.stop()


class KubeClient(ClusterFacade):
    """Kubernetes client for rollout operations."""

    def __init__(self, namespace: str, in_cluster: bool = True, context: str | None = None):
        """
        Initialize Kubernetes client.

        Args:
            namespace: Default Kubernetes namespace
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
        """
        self.namespace = namespace
        self.in_cluster = in_cluster

        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                if context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()

            self.v1 = client.CoreV1Api()
            self.apps_v1 = client.AppsV1Api()
            logger.info(f"✅ Kubernetes client initialized for namespace: {namespace}")

        except Exception as e:
            logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
            raise

    def _call(self, action: str, fn: Callable, *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except ApiException as e:
            error = translate_api_exception(e, action)
            if isinstance(error, NotFoundError):
                logger.debug(error.message)
            else:
                logger.error(f"❌ {error.message}")
            raise error from e

    def get(self, kind: ObjectKind, namespace: str, name: str) -> Any:
        """
        Read a single object.

        Args:
            kind: Object kind
            namespace: Object namespace (ignored for nodes)
            name: Object name

        Returns:
            Workload, Pod or Node
        """
        namespace = namespace or self.namespace
        if kind == ObjectKind.WORKLOAD:
            raw = self._call(f"Get deployment {namespace}/{name}", self.apps_v1.read_namespaced_deployment,
                             name=name, namespace=namespace)
        elif kind == ObjectKind.POD:
            raw = self._call(f"Get pod {namespace}/{name}", self.v1.read_namespaced_pod,
                             name=name, namespace=namespace)
        elif kind == ObjectKind.SERVICE:
            raw = self._call(f"Get service {namespace}/{name}", self.v1.read_namespaced_service,
                             name=name, namespace=namespace)
        else:
            raw = self._call(f"Get node {name}", self.v1.read_node, name=name)
        return _CONVERTERS[kind](raw)

    def list(self, kind: ObjectKind, namespace: str, labels: Optional[Mapping[str, str]] = None,
             fields: Optional[Mapping[str, str]] = None) -> List[Any]:
        """
        List objects matching the selectors.

        Args:
            kind: Object kind
            namespace: Namespace to list in (ignored for nodes)
            labels: Label selector map
            fields: Field selector map

        Returns:
            List of Workload, Pod or Node objects
        """
        fn, kwargs = self._list_call(kind, namespace or self.namespace, labels, fields)
        raw = self._call(f"List {kind.value.lower()}s", fn, **kwargs)
        items = [_CONVERTERS[kind](item) for item in raw.items]
        logger.debug(f"Retrieved {len(items)} {kind.value.lower()}s ({kwargs.get('label_selector')})")
        return items

    def _list_call(self, kind: ObjectKind, namespace: str, labels: Optional[Mapping[str, str]],
                   fields: Optional[Mapping[str, str]]):
        kwargs: Dict[str, Any] = {
            "label_selector": to_selector_string(labels),
            "field_selector": to_selector_string(fields),
        }
        if kind == ObjectKind.WORKLOAD:
            return self.apps_v1.list_namespaced_deployment, dict(kwargs, namespace=namespace)
        if kind == ObjectKind.POD:
            return self.v1.list_namespaced_pod, dict(kwargs, namespace=namespace)
        if kind == ObjectKind.SERVICE:
            return self.v1.list_namespaced_service, dict(kwargs, namespace=namespace)
        return self.v1.list_node, kwargs

    def create(self, kind: ObjectKind, namespace: str, obj: Any) -> Any:
        """
        Create an object from its manifest body.

        Args:
            kind: Object kind
            namespace: Target namespace
            obj: Object carrying the manifest in ``body``

        Returns:
            The created object as stored by the API server
        """
        namespace = namespace or self.namespace
        body = getattr(obj, "body", None)
        if body is None:
            raise BadFormatError(f"Cannot create {kind.value} {obj.name}: no manifest body")
        if kind == ObjectKind.WORKLOAD:
            raw = self._call(f"Create deployment {namespace}/{obj.name}", self.apps_v1.create_namespaced_deployment,
                             namespace=namespace, body=body)
        elif kind == ObjectKind.POD:
            raw = self._call(f"Create pod {namespace}/{obj.name}", self.v1.create_namespaced_pod,
                             namespace=namespace, body=body)
        elif kind == ObjectKind.SERVICE:
            raw = self._call(f"Create service {namespace}/{obj.name}", self.v1.create_namespaced_service,
                             namespace=namespace, body=body)
        else:
            raw = self._call(f"Create node {obj.name}", self.v1.create_node, body=body)
        logger.info(f"✅ Created {kind.value} {obj.name}")
        return _CONVERTERS[kind](raw)

    def update(self, kind: ObjectKind, namespace: str, obj: Any) -> Any:
        """
        Write back the mutable parts of an object.

        The patch carries the resourceVersion that was read, so the API server
        rejects it with 409 when the object changed in between.

        Args:
            kind: Object kind
            namespace: Object namespace (ignored for nodes)
            obj: Workload (replicas); Pod, Service or Node (labels)

        Returns:
            The updated object
        """
        namespace = namespace or self.namespace
        metadata: Dict[str, Any] = {}
        if obj.resource_version:
            metadata["resourceVersion"] = obj.resource_version
        if kind == ObjectKind.WORKLOAD:
            body = {"metadata": metadata, "spec": {"replicas": obj.replicas}}
            raw = self._call(f"Update deployment {namespace}/{obj.name}", self.apps_v1.patch_namespaced_deployment,
                             name=obj.name, namespace=namespace, body=body)
        elif kind == ObjectKind.POD:
            body = {"metadata": dict(metadata, labels=obj.labels)}
            raw = self._call(f"Update pod {namespace}/{obj.name}", self.v1.patch_namespaced_pod,
                             name=obj.name, namespace=namespace, body=body)
        elif kind == ObjectKind.SERVICE:
            body = {"metadata": dict(metadata, labels=obj.labels)}
            raw = self._call(f"Update service {namespace}/{obj.name}", self.v1.patch_namespaced_service,
                             name=obj.name, namespace=namespace, body=body)
        else:
            body = {"metadata": dict(metadata, labels=obj.labels)}
            raw = self._call(f"Update node {obj.name}", self.v1.patch_node, name=obj.name, body=body)
        return _CONVERTERS[kind](raw)

    def delete(self, kind: ObjectKind, namespace: str, name: str, grace_period_seconds: Optional[int] = None,
               propagation_policy: Optional[str] = None) -> None:
        """
        Delete an object.

        Args:
            kind: Object kind
            namespace: Object namespace (ignored for nodes)
            name: Object name
            grace_period_seconds: Deletion grace period, None for the object's default
            propagation_policy: Orphan, Background or Foreground (workloads)
        """
        namespace = namespace or self.namespace
        options = client.V1DeleteOptions(grace_period_seconds=grace_period_seconds,
                                         propagation_policy=propagation_policy)
        if kind == ObjectKind.WORKLOAD:
            self._call(f"Delete deployment {namespace}/{name}", self.apps_v1.delete_namespaced_deployment,
                       name=name, namespace=namespace, body=options)
        elif kind == ObjectKind.POD:
            self._call(f"Delete pod {namespace}/{name}", self.v1.delete_namespaced_pod,
                       name=name, namespace=namespace, body=options)
        elif kind == ObjectKind.SERVICE:
            self._call(f"Delete service {namespace}/{name}", self.v1.delete_namespaced_service,
                       name=name, namespace=namespace, body=options)
        else:
            self._call(f"Delete node {name}", self.v1.delete_node, name=name, body=options)

    def watch(self, kind: ObjectKind, namespace: str, labels: Optional[Mapping[str, str]] = None,
              fields: Optional[Mapping[str, str]] = None, timeout_seconds: Optional[int] = None) -> Subscription:
        """
        Open a watch on objects matching the selectors.

        Args:
            kind: Object kind
            namespace: Namespace to watch (ignored for nodes)
            labels: Label selector map
            fields: Field selector map
            timeout_seconds: Server-side timeout after which the feed ends

        Returns:
            Subscription yielding ChangeEvent objects
        """
        fn, kwargs = self._list_call(kind, namespace or self.namespace, labels, fields)
        if timeout_seconds is not None:
            kwargs["timeout_seconds"] = timeout_seconds
            # Client-side bound so a half-open connection cannot outlive the server-side timeout.
            kwargs["_request_timeout"] = timeout_seconds + WATCH_REQUEST_GRACE_SECS
        return KubeSubscription(fn, kind, **kwargs)
