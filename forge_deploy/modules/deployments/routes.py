from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks
from forge_deploy.database.supabase_client import get_supabase
from forge_deploy.modules.deployments.schemas import (
    DeploymentCreate,
    DeploymentResponse,
    DeploymentLogsResponse,
)
from forge_deploy.modules.deployments.service import DeploymentService
from forge_deploy.modules.deployments.deployment_worker import deploy
from forge_deploy.modules.deployments.exceptions import DeploymentAlreadyRunning, InvalidStatusTransition
from forge_deploy.modules.deployments.models import DeploymentStatus, IN_PROGRESS_STATUSES
from forge_deploy.modules.deployments import run_registry
from forge_deploy.core.dependencies import get_current_user, check_deployment_access, check_project_access
from supabase import Client
from typing import List, Dict

router = APIRouter(prefix="/deployments", tags=["deployments"])


def get_deployment_service(supabase: Client = Depends(get_supabase)) -> DeploymentService:
    return DeploymentService(supabase)


def _claim(deployment_id: str) -> None:
    try:
        run_registry.register(deployment_id)
    except DeploymentAlreadyRunning:
        raise HTTPException(status_code=409, detail="Deployment is already running")


@router.post("", response_model=DeploymentResponse, status_code=201)
async def create_deployment(
    deployment_data: DeploymentCreate,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase)
):
    """Create a pending deployment for a project build and start provisioning it in the background"""
    check_project_access(deployment_data.project_id, user_data, supabase)
    deployment = service.create_deployment(deployment_data, user_data["id"])
    _claim(deployment.id)
    background_tasks.add_task(
        deploy,
        deployment_id=deployment.id,
        project_id=deployment.project_id,
        project_name=deployment_data.project_name,
        build_artifact_path=deployment_data.build_artifact_path,
    )
    return DeploymentResponse.from_state(deployment)


@router.post("/{deployment_id}/retry", response_model=DeploymentResponse)
async def retry_deployment(
    deployment_id: str,
    background_tasks: BackgroundTasks,
    user_data: Dict = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase)
):
    """
    Re-run a failed deployment. Steps that already completed are skipped.
    A deployment left in progress by a process that no longer runs it is
    marked failed first and then retried.
    """
    check_deployment_access(deployment_id, user_data, supabase)
    deployment = service.get_deployment(deployment_id)
    if deployment.status != DeploymentStatus.FAILED and deployment.status not in IN_PROGRESS_STATUSES:
        raise HTTPException(status_code=400, detail=f"Only failed or interrupted deployments can be retried (status: {deployment.status})")
    if not deployment.project_name or not deployment.build_artifact_path:
        raise HTTPException(status_code=400, detail="Deployment has no recorded build artifact to retry")
    _claim(deployment_id)
    try:
        if deployment.status in IN_PROGRESS_STATUSES:
            service.mark_interrupted(deployment_id)
        deployment = service.reset_for_retry(deployment_id)
    except InvalidStatusTransition as e:
        run_registry.unregister(deployment_id)
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        run_registry.unregister(deployment_id)
        raise
    background_tasks.add_task(
        deploy,
        deployment_id=deployment.id,
        project_id=deployment.project_id,
        project_name=deployment.project_name,
        build_artifact_path=deployment.build_artifact_path,
    )
    return DeploymentResponse.from_state(deployment)


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase)
):
    """Get deployment by ID. Secrets in provider state are never returned."""
    check_deployment_access(deployment_id, user_data, supabase)
    return DeploymentResponse.from_state(service.get_deployment(deployment_id))


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    user_data: Dict = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase)
):
    """
    Poll for deployment logs.
    Returns current log lines, deployment status and health status.
    """
    check_deployment_access(deployment_id, user_data, supabase)
    deployment = service.get_deployment(deployment_id)
    return DeploymentLogsResponse(
        deployment_id=deployment.id,
        logs=deployment.log_lines,
        status=deployment.status,
        health_check_status=deployment.health_check_status,
        has_more=deployment.status in IN_PROGRESS_STATUSES or run_registry.is_active(deployment.id)
    )


@router.get("/project/{project_id}", response_model=List[DeploymentResponse])
async def list_deployments_by_project(
    project_id: str,
    user_data: Dict = Depends(get_current_user),
    service: DeploymentService = Depends(get_deployment_service),
    supabase: Client = Depends(get_supabase)
):
    """List all deployments for a project, newest first"""
    check_project_access(project_id, user_data, supabase)
    return [DeploymentResponse.from_state(d) for d in service.list_deployments_by_project(project_id)]
