# fastapi_app.py
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from .adapters import RolloutAdapters
from .config import settings
from .errors import RolloutError
from .kube_client import KubeClient

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECS = 1.0

# -----------------------------------------------------------------------------
# FastAPI app + CORS
# -----------------------------------------------------------------------------
app = FastAPI(title="Rollout Backend", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class AppFromFileSpec(BaseModel):
    name: str = Field(..., description="Name of the file")
    content: str = Field(..., description="File content")


class AppUpdateByNodeFromFileSpec(AppFromFileSpec):
    nodelabel: str = Field(default="", description="Node label name")
    poll_interval: int = Field(default=0, ge=0, alias="poll-interval")
    timeout: int = Field(default=0, ge=0)
    deletion_timeout: int = Field(default=0, ge=0, alias="deletion-timeout")
    creation_timeout: int = Field(default=0, ge=0, alias="creation-timeout")

    class Config:
        populate_by_name = True


class ReplicasBody(BaseModel):
    replicas: int = Field(..., ge=0)

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
_adapters: Optional[RolloutAdapters] = None


def get_adapters() -> RolloutAdapters:
    """Create the Kubernetes client on first use."""
    global _adapters
    if _adapters is None:
        try:
            kube = KubeClient(namespace=settings.K8S_NAMESPACE, in_cluster=settings.K8S_IN_CLUSTER,
                              context=settings.K8S_CONTEXT)
        except Exception as e:
            logger.error(f"❌ Kubernetes client unavailable: {e}")
            raise HTTPException(503, f"Kubernetes client unavailable: {e}")
        _adapters = RolloutAdapters(kube)
    return _adapters


def _http_error(action: str, e: RolloutError) -> HTTPException:
    logger.error(f"❌ {action} failed: {e}")
    return HTTPException(e.status_code, f"{action} failed: {e.message}")


async def _cancel_on_disconnect(request: Request, cancel: threading.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.warning(f"⚠️ Client left {request.url.path}, cancelling the rollout")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECS)


async def run_cancellable(request: Request, fn: Callable[..., Dict[str, Any]], *args, **kwargs) -> Dict[str, Any]:
    """
    Run a blocking rollout in the thread pool, cancelling it if the client goes away.

    The rollout receives a ``cancel`` event that is set once the request is
    disconnected; the engine stops at its next checkpoint.
    """
    cancel = threading.Event()
    watcher = asyncio.create_task(_cancel_on_disconnect(request, cancel))
    try:
        return await run_in_threadpool(fn, *args, cancel=cancel, **kwargs)
    finally:
        watcher.cancel()

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "healthy"}

@app.get("/api/health")
async def api_health():
    return {"status": "healthy"}

# -----------------------------------------------------------------------------
# Rolling update endpoints
# -----------------------------------------------------------------------------
@app.post("/api/deployments/{namespace}/{name}/rolling-update")
async def api_rolling_update(namespace: str, name: str, spec: AppFromFileSpec, request: Request,
                             adapters: RolloutAdapters = Depends(get_adapters)) -> Dict[str, Any]:
    """Replace a deployment pod by pod with the one in the sent file."""
    logger.info(f"🚀 Rolling update requested: {namespace}/{name} -> {spec.name}")
    try:
        return await run_cancellable(request, adapters.rolling_update, namespace, name, spec.name, spec.content)
    except RolloutError as e:
        raise _http_error(f"Rolling update of {name}", e)

@app.post("/api/deployments/{namespace}/{name}/rolling-update-by-node")
async def api_rolling_update_by_node(namespace: str, name: str, spec: AppUpdateByNodeFromFileSpec, request: Request,
                                     adapters: RolloutAdapters = Depends(get_adapters)) -> Dict[str, Any]:
    """Replace a deployment node by node, steered by a node label."""
    logger.info(f"🚀 Rolling update by node requested: {namespace}/{name} -> {spec.name} (label {spec.nodelabel})")
    try:
        return await run_cancellable(
            request, adapters.rolling_update_by_node,
            namespace, name, spec.name, spec.content, spec.nodelabel,
            poll_interval=spec.poll_interval, timeout=spec.timeout,
            deletion_timeout=spec.deletion_timeout, creation_timeout=spec.creation_timeout,
        )
    except RolloutError as e:
        raise _http_error(f"Rolling update by node of {name}", e)

# -----------------------------------------------------------------------------
# Deployment endpoints
# -----------------------------------------------------------------------------
@app.get("/api/deployments/{namespace}")
def api_list_deployments(namespace: str, adapters: RolloutAdapters = Depends(get_adapters)) -> Dict[str, Any]:
    try:
        return adapters.list_workloads(namespace)
    except RolloutError as e:
        raise _http_error(f"Listing deployments in {namespace}", e)

@app.get("/api/deployments/{namespace}/{name}")
def api_deployment_detail(namespace: str, name: str,
                          adapters: RolloutAdapters = Depends(get_adapters)) -> Dict[str, Any]:
    try:
        return adapters.get_workload_detail(namespace, name)
    except RolloutError as e:
        raise _http_error(f"Getting {name}", e)

@app.get("/api/deployments/{namespace}/{name}/pods")
def api_pod_info(namespace: str, name: str, adapters: RolloutAdapters = Depends(get_adapters)) -> Dict[str, Any]:
    try:
        return adapters.get_pod_info(namespace, name)
    except RolloutError as e:
        raise _http_error(f"Getting pods of {name}", e)

@app.put("/api/deployments/{namespace}/{name}/replicas")
def api_update_replicas(namespace: str, name: str, body: ReplicasBody,
                        adapters: RolloutAdapters = Depends(get_adapters)) -> Dict[str, Any]:
    try:
        return adapters.update_replicas(namespace, name, body.replicas)
    except RolloutError as e:
        raise _http_error(f"Scaling {name}", e)

@app.delete("/api/deployments/{namespace}/{name}")
def api_delete_deployment(namespace: str, name: str, delete_pods: bool = Query(True),
                          delete_services: bool = Query(False),
                          adapters: RolloutAdapters = Depends(get_adapters)) -> Dict[str, Any]:
    try:
        return adapters.delete_workload(namespace, name, delete_pods=delete_pods, delete_services=delete_services)
    except RolloutError as e:
        raise _http_error(f"Deleting {name}", e)
