"""Tests for token resolution and ownership checks."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException

from forge_deploy.core.dependencies import check_deployment_access, check_project_access, is_admin
from forge_deploy.modules.auth.service import AuthService


def test_get_current_user_resolves_and_caches_token():
    supabase = MagicMock()
    supabase.auth.get_user.return_value = SimpleNamespace(
        user=SimpleNamespace(id="user-9", email="a@b.c", app_metadata={"role": "admin"})
    )
    service = AuthService(supabase)

    first = service.get_current_user("token-abc-unique")
    second = service.get_current_user("token-abc-unique")

    assert first == {"id": "user-9", "email": "a@b.c", "app_metadata": {"role": "admin"}}
    assert second == first
    supabase.auth.get_user.assert_called_once_with(jwt="token-abc-unique")


def test_invalid_token_is_401():
    supabase = MagicMock()
    supabase.auth.get_user.side_effect = Exception("invalid JWT: token is expired")
    with pytest.raises(HTTPException) as exc:
        AuthService(supabase).get_current_user("token-expired-unique")
    assert exc.value.status_code == 401


def test_project_access(fake_supabase, project):
    owner = {"id": "user-1", "app_metadata": {}}
    other = {"id": "user-2", "app_metadata": {}}
    admin = {"id": "user-3", "app_metadata": {"role": "admin"}}

    assert check_project_access(project["id"], owner, fake_supabase) is owner
    assert check_project_access(project["id"], admin, fake_supabase) is admin
    assert is_admin(admin) and not is_admin(owner)
    with pytest.raises(HTTPException) as exc:
        check_project_access(project["id"], other, fake_supabase)
    assert exc.value.status_code == 403
    with pytest.raises(HTTPException) as exc:
        check_project_access("missing", owner, fake_supabase)
    assert exc.value.status_code == 404


def test_deployment_access_falls_back_to_project_owner(fake_supabase, make_deployment):
    dep = make_deployment(user_id="someone-else")
    owner = {"id": "user-1", "app_metadata": {}}
    assert check_deployment_access(dep["id"], owner, fake_supabase) is owner
    with pytest.raises(HTTPException) as exc:
        check_deployment_access(dep["id"], {"id": "user-2", "app_metadata": {}}, fake_supabase)
    assert exc.value.status_code == 403
