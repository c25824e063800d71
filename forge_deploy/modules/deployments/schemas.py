from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from forge_deploy.modules.deployments.models import SECRET_KEYS


class DeploymentCreate(BaseModel):
    project_id: str
    project_name: str = Field(min_length=1, max_length=100)
    build_artifact_path: str = Field(min_length=1)


class DeploymentState(BaseModel):
    """Full deployment record as stored, secrets included. Never returned over HTTP."""
    id: str
    project_id: str
    user_id: Optional[str] = None
    project_name: Optional[str] = None
    build_artifact_path: Optional[str] = None
    status: str
    deploy_log: str = ""
    provider_state: Dict[str, Any] = Field(default_factory=dict)
    completed_steps: List[str] = Field(default_factory=list)
    deploy_url: Optional[str] = None
    health_check_status: Optional[str] = None
    last_health_check_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def log_lines(self) -> List[str]:
        return [line for line in (self.deploy_log or "").splitlines() if line.strip()]


class DeploymentResponse(BaseModel):
    id: str
    project_id: str
    user_id: Optional[str] = None
    project_name: Optional[str] = None
    status: str
    provider_state: Dict[str, Any]
    completed_steps: List[str]
    deploy_url: Optional[str] = None
    health_check_status: Optional[str] = None
    last_health_check_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: DeploymentState) -> "DeploymentResponse":
        public_state = {k: v for k, v in state.provider_state.items() if k not in SECRET_KEYS}
        data = state.model_dump(exclude={"deploy_log", "build_artifact_path", "provider_state"})
        return cls(provider_state=public_state, **data)


class DeploymentLogsResponse(BaseModel):
    deployment_id: str
    logs: List[str]
    status: str
    health_check_status: Optional[str] = None
    has_more: bool = False
