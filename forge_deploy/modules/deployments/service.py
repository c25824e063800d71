from supabase import Client
from forge_deploy.modules.deployments.schemas import DeploymentCreate, DeploymentState
from forge_deploy.modules.deployments.models import (
    DeploymentStatus,
    TERMINAL_STATUSES,
    WARN,
    status_rank,
)
from forge_deploy.modules.deployments.exceptions import (
    DeploymentNotFound,
    DeploymentStoreError,
    InvalidStatusTransition,
)
from typing import Any, Dict, List, Optional
from fastapi import HTTPException
from datetime import datetime
import threading
import logging

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
_write_locks: Dict[str, threading.RLock] = {}


def _lock_for(deployment_id: str) -> threading.RLock:
    """One writer per deployment id inside this process."""
    with _locks_guard:
        lock = _write_locks.get(deployment_id)
        if lock is None:
            lock = threading.RLock()
            _write_locks[deployment_id] = lock
        return lock


def release_lock(deployment_id: str) -> None:
    """Drop the write lock of a deployment whose run has ended."""
    with _locks_guard:
        _write_locks.pop(deployment_id, None)


def _now() -> str:
    return datetime.utcnow().isoformat()


class DeploymentService:
    """
    Deployment record store backed by the Supabase `deployments` table.

    Pipeline writes (status, log, provider_state, completed_steps) raise
    DeploymentStoreError when they cannot be confirmed so the orchestrator
    never advances on state that is not durable. Route-facing reads raise
    HTTPException like the rest of the service layer.
    """

    TABLE = "deployments"
    PROJECTS_TABLE = "spec_projects"

    def __init__(self, supabase: Client):
        self.supabase = supabase

    # ---- route-facing ---------------------------------------------------

    def create_deployment(self, deployment_data: DeploymentCreate, user_id: str) -> DeploymentState:
        """Create a new pending deployment"""
        try:
            result = self.supabase.table(self.TABLE).insert({
                "project_id": deployment_data.project_id,
                "project_name": deployment_data.project_name,
                "build_artifact_path": deployment_data.build_artifact_path,
                "user_id": user_id,
                "status": DeploymentStatus.PENDING,
                "deploy_log": "",
                "provider_state": {},
                "completed_steps": [],
            }).execute()

            if not result.data:
                raise HTTPException(status_code=500, detail="Failed to create deployment")

            return DeploymentState(**result.data[0])
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error creating deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def get_deployment(self, deployment_id: str) -> DeploymentState:
        """Get deployment by ID"""
        try:
            return self.load(deployment_id)
        except DeploymentNotFound:
            raise HTTPException(status_code=404, detail="Deployment not found")
        except Exception as e:
            logger.error(f"Error getting deployment: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    def list_deployments_by_project(self, project_id: str) -> List[DeploymentState]:
        """List all deployments for a project, newest first"""
        try:
            result = self.supabase.table(self.TABLE)\
                .select("*")\
                .eq("project_id", project_id)\
                .order("created_at", desc=True)\
                .execute()

            return [DeploymentState(**deployment) for deployment in (result.data or [])]
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            raise HTTPException(status_code=500, detail=str(e))

    # ---- pipeline store -------------------------------------------------

    def load(self, deployment_id: str) -> DeploymentState:
        try:
            result = self.supabase.table(self.TABLE)\
                .select("*")\
                .eq("id", deployment_id)\
                .maybe_single()\
                .execute()
        except Exception as e:
            raise DeploymentStoreError(f"Failed to load deployment {deployment_id}: {e}") from e

        if result is None or not result.data:
            raise DeploymentNotFound(deployment_id)
        return DeploymentState(**result.data)

    def _update(self, deployment_id: str, update_data: Dict[str, Any]) -> DeploymentState:
        update_data = dict(update_data, updated_at=_now())
        try:
            result = self.supabase.table(self.TABLE)\
                .update(update_data)\
                .eq("id", deployment_id)\
                .execute()
        except Exception as e:
            logger.error(f"Error updating deployment {deployment_id}: {str(e)}")
            raise DeploymentStoreError(f"Failed to update deployment {deployment_id}: {e}") from e

        if not result.data:
            raise DeploymentStoreError(f"Update of deployment {deployment_id} was not confirmed")
        return DeploymentState(**result.data[0])

    def save_status(self, deployment_id: str, status: str) -> DeploymentState:
        """Move status forward. Backward moves are rejected; any state but live may move to failed."""
        with _lock_for(deployment_id):
            current = self.load(deployment_id)
            if current.status == DeploymentStatus.LIVE and status != DeploymentStatus.LIVE:
                raise InvalidStatusTransition(f"{current.status} -> {status}")
            if status != DeploymentStatus.FAILED and current.status != DeploymentStatus.FAILED:
                if status_rank(status) < status_rank(current.status):
                    raise InvalidStatusTransition(f"{current.status} -> {status}")
            update_data: Dict[str, Any] = {"status": status}
            if status in TERMINAL_STATUSES:
                update_data["completed_at"] = _now()
            return self._update(deployment_id, update_data)

    def append_log(self, deployment_id: str, message: str) -> None:
        with _lock_for(deployment_id):
            current = self.load(deployment_id)
            existing = current.deploy_log or ""
            if existing and not existing.endswith("\n"):
                existing += "\n"
            self._update(deployment_id, {"deploy_log": existing + message.rstrip("\n") + "\n"})

    def save_provider_state(self, deployment_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        """Merge partial into provider_state. Keys already present are kept as they are."""
        with _lock_for(deployment_id):
            current = self.load(deployment_id)
            merged = dict(current.provider_state or {})
            for key, value in partial.items():
                if key in merged:
                    if merged[key] != value:
                        logger.warning(
                            f"Deployment {deployment_id}: provider_state key '{key}' already set, keeping original"
                        )
                    continue
                merged[key] = value
            if merged == (current.provider_state or {}):
                return merged
            return self._update(deployment_id, {"provider_state": merged}).provider_state

    def mark_step_completed(self, deployment_id: str, step: str) -> None:
        with _lock_for(deployment_id):
            current = self.load(deployment_id)
            steps = list(current.completed_steps or [])
            if step in steps:
                return
            self._update(deployment_id, {"completed_steps": steps + [step]})

    def set_deploy_url(self, deployment_id: str, url: str) -> None:
        with _lock_for(deployment_id):
            self._update(deployment_id, {"deploy_url": url})

    def set_error(self, deployment_id: str, message: str) -> None:
        with _lock_for(deployment_id):
            self._update(deployment_id, {"error_message": message})

    def save_health_check(self, deployment_id: str, health_status: str) -> None:
        with _lock_for(deployment_id):
            self._update(deployment_id, {
                "health_check_status": health_status,
                "last_health_check_at": _now(),
            })

    def mark_interrupted(self, deployment_id: str) -> DeploymentState:
        """Fail a deployment whose run died without recording an outcome."""
        with _lock_for(deployment_id):
            current = self.load(deployment_id)
            self.append_log(deployment_id, f"{WARN} Previous run was interrupted during {current.status}")
            self.set_error(deployment_id, f"Interrupted during {current.status}")
            return self.save_status(deployment_id, DeploymentStatus.FAILED)

    def reset_for_retry(self, deployment_id: str) -> DeploymentState:
        """Clear the failure reason of a failed deployment before it is re-run. Log and provider state stay."""
        with _lock_for(deployment_id):
            current = self.load(deployment_id)
            if current.status != DeploymentStatus.FAILED:
                raise InvalidStatusTransition(f"Only failed deployments can be retried (status: {current.status})")
            return self._update(deployment_id, {"error_message": None, "completed_at": None})

    def update_project_deploy_url(self, project_id: str, deployment_id: str, url: str) -> None:
        """Reflect the live URL on the owning project."""
        try:
            result = self.supabase.table(self.PROJECTS_TABLE)\
                .update({
                    "deploy_url": url,
                    "deployment_id": deployment_id,
                    "deployed_at": _now(),
                    "updated_at": _now(),
                })\
                .eq("id", project_id)\
                .execute()
        except Exception as e:
            raise DeploymentStoreError(f"Failed to update project {project_id}: {e}") from e
        if not result.data:
            raise DeploymentStoreError(f"Update of project {project_id} was not confirmed")
