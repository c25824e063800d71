"""
Core dependencies for route protection and ownership checks
"""

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from forge_deploy.database.supabase_client import get_supabase
from forge_deploy.modules.auth.service import AuthService
from supabase import Client
import logging

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_auth_service(supabase: Client = Depends(get_supabase)) -> AuthService:
    return AuthService(supabase)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(security),
    auth_service: AuthService = Depends(get_auth_service)
) -> dict:
    """Extract current user info from JWT token"""
    return auth_service.get_current_user(credentials.credentials)


def is_admin(user_data: dict) -> bool:
    """Admins are flagged server-side in app_metadata, which users cannot modify"""
    app_metadata = user_data.get("app_metadata") or {}
    return app_metadata.get("role") == "admin"


def check_project_access(project_id: str, user_data: dict, supabase: Client) -> dict:
    """Allow if admin or the user owns the project"""
    if is_admin(user_data):
        return user_data
    result = supabase.table("spec_projects")\
        .select("id, user_id")\
        .eq("id", project_id)\
        .maybe_single()\
        .execute()
    if result is None or not result.data:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Project not found"
        )
    if result.data.get("user_id") == user_data["id"]:
        return user_data
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You must own this project to access its deployments"
    )


def check_deployment_access(deployment_id: str, user_data: dict, supabase: Client) -> dict:
    """Allow if admin, the deployment creator, or the owner of the deployment's project"""
    if is_admin(user_data):
        return user_data
    result = supabase.table("deployments")\
        .select("project_id, user_id")\
        .eq("id", deployment_id)\
        .maybe_single()\
        .execute()
    if result is None or not result.data:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Deployment not found"
        )
    deployment = result.data
    if deployment.get("user_id") == user_data["id"]:
        return user_data
    return check_project_access(deployment["project_id"], user_data, supabase)
