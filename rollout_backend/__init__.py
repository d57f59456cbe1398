"""
Node-grouped rolling updates of Kubernetes Deployments.
"""
from .rollout import rolling_update, rolling_update_by_node

__version__ = "1.0.0"

__all__ = ["rolling_update", "rolling_update_by_node", "__version__"]
