"""Tests for the post-deploy health check and heal loop."""

from unittest.mock import MagicMock, patch

import httpx

from forge_deploy.modules.deployments.health_check import HealthChecker, http_status


def make_checker(store, codes, redeploy_result=(True, "")):
    codes = list(codes)
    vercel = MagicMock()
    vercel.deploy.return_value = redeploy_result
    sleeps = []
    checker = HealthChecker(
        store,
        vercel,
        http_get=lambda url, timeout: codes.pop(0) if len(codes) > 1 else codes[0],
        sleep=sleeps.append,
        propagation_delay=10,
        redeploy_retries=2,
    )
    return checker, vercel, sleeps


def test_heals_after_two_redeploys(store, make_deployment):
    dep = make_deployment(status="live", deploy_url="https://my-app.vercel.app")
    checker, vercel, sleeps = make_checker(store, [500, 500, 200])

    result = checker.check(dep["id"], "https://my-app.vercel.app", "/tmp/build", max_redeploys=2)

    assert result == "healthy"
    assert vercel.deploy.call_count == 2
    _, kwargs = vercel.deploy.call_args
    assert kwargs["max_retries"] == 2
    state = store.load(dep["id"])
    assert state.health_check_status == "healthy"
    assert state.status == "live"
    assert sleeps == [10, 10, 10]


def test_exhausted_redeploys_mark_unhealthy_but_stay_live(store, make_deployment):
    dep = make_deployment(status="live", deploy_url="https://my-app.vercel.app")
    checker, vercel, _ = make_checker(store, [500])

    result = checker.check(dep["id"], "https://my-app.vercel.app", "/tmp/build", max_redeploys=2)

    assert result == "unhealthy"
    assert vercel.deploy.call_count == 2
    state = store.load(dep["id"])
    assert state.health_check_status == "unhealthy"
    assert state.status == "live"
    assert "manual inspection" in state.log_lines[-1]


def test_healthy_first_probe_never_redeploys(store, make_deployment):
    dep = make_deployment(status="live")
    checker, vercel, sleeps = make_checker(store, [200])

    assert checker.check(dep["id"], "https://my-app.vercel.app", "/tmp/build") == "healthy"
    vercel.deploy.assert_not_called()
    assert sleeps == [10]


def test_failed_redeploy_still_counts_and_loop_continues(store, make_deployment):
    dep = make_deployment(status="live")
    checker, vercel, _ = make_checker(store, [0, 200], redeploy_result=(False, "boom"))

    assert checker.check(dep["id"], "https://my-app.vercel.app", "/tmp/build", max_redeploys=1) == "healthy"
    assert vercel.deploy.call_count == 1


def test_zero_redeploys_checks_once(store, make_deployment):
    dep = make_deployment(status="live")
    checker, vercel, _ = make_checker(store, [503])

    assert checker.check(dep["id"], "https://my-app.vercel.app", "/tmp/build", max_redeploys=0) == "unhealthy"
    vercel.deploy.assert_not_called()


def test_http_status_maps_network_errors_to_zero():
    with patch("forge_deploy.modules.deployments.health_check.httpx.get", side_effect=httpx.ConnectError("refused")):
        assert http_status("https://my-app.vercel.app", timeout=1) == 0


def test_http_status_returns_code():
    response = MagicMock(status_code=404)
    with patch("forge_deploy.modules.deployments.health_check.httpx.get", return_value=response) as get:
        assert http_status("https://my-app.vercel.app", timeout=3) == 404
    get.assert_called_once_with("https://my-app.vercel.app", timeout=3, follow_redirects=True)
