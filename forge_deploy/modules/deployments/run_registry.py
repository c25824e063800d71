"""Thread-safe set of deployment ids with an orchestrator run in this process."""
import threading
import logging

from forge_deploy.modules.deployments.exceptions import DeploymentAlreadyRunning

logger = logging.getLogger(__name__)
_lock = threading.Lock()
_active: set[str] = set()


def register(deployment_id: str) -> None:
    """Claim the deployment for one run. Raises DeploymentAlreadyRunning if claimed."""
    with _lock:
        if deployment_id in _active:
            raise DeploymentAlreadyRunning(deployment_id)
        _active.add(deployment_id)
        logger.debug(f"Registered run for deployment {deployment_id}")


def unregister(deployment_id: str) -> None:
    with _lock:
        _active.discard(deployment_id)
        logger.debug(f"Unregistered deployment {deployment_id}")


def is_active(deployment_id: str) -> bool:
    with _lock:
        return deployment_id in _active
