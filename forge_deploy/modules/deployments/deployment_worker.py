import logging
from typing import Optional

from forge_deploy.config import settings
from forge_deploy.database.supabase_client import get_service_supabase
from forge_deploy.modules.deployments import run_registry
from forge_deploy.modules.deployments.deploy_config import DeployConfig
from forge_deploy.modules.deployments.models import DeploymentStatus, FAIL
from forge_deploy.modules.deployments.orchestrator import DeploymentOrchestrator
from forge_deploy.modules.deployments.service import DeploymentService, release_lock
from forge_deploy.modules.events.service import EventService

logger = logging.getLogger(__name__)


def deploy(
    deployment_id: str,
    project_id: str,
    project_name: str,
    build_artifact_path: str,
    orchestrator: Optional[DeploymentOrchestrator] = None,
) -> None:
    """
    Background entry point for one deploy run.
    Uses the service-role Supabase client so record writes bypass RLS. The
    caller must already hold the run_registry claim for deployment_id; it is
    released here when the run ends.
    """
    try:
        if orchestrator is None:
            client = get_service_supabase()
            orchestrator = DeploymentOrchestrator(
                DeploymentService(client),
                DeployConfig.from_settings(settings),
                events=EventService(client),
            )
        orchestrator.deploy(deployment_id, project_id, project_name, build_artifact_path)
    except Exception as e:
        logger.exception(f"Deployment worker error for {deployment_id}: {str(e)}")
        if orchestrator is not None:
            _mark_failed(orchestrator.store, deployment_id, str(e))
    finally:
        release_lock(deployment_id)
        run_registry.unregister(deployment_id)


def _mark_failed(store: DeploymentService, deployment_id: str, message: str) -> None:
    """Best effort so a crashed run does not leave the deployment stuck in a deploying state."""
    try:
        store.append_log(deployment_id, f"{FAIL} Deployment failed: unexpected error")
        store.set_error(deployment_id, message)
        store.save_status(deployment_id, DeploymentStatus.FAILED)
    except Exception as update_error:
        logger.error(f"Failed to mark deployment {deployment_id} failed: {str(update_error)}")
