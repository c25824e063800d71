import time
import logging
from typing import Callable, Optional

import httpx

from forge_deploy.modules.deployments.models import HealthCheckStatus, OK, WARN, INFO
from forge_deploy.modules.deployments.providers import VercelProvider
from forge_deploy.modules.deployments.service import DeploymentService

logger = logging.getLogger(__name__)


def http_status(url: str, timeout: float = 15.0) -> int:
    """Single GET; any network error counts as status 0."""
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
        return response.status_code
    except Exception as e:
        logger.warning(f"Health check request to {url} failed: {e}")
        return 0


class HealthChecker:
    """
    Post-deploy probe. A non-200 answer triggers a production redeploy, up to
    max_redeploys times. Running out of redeploys marks the deployment
    unhealthy but leaves it live.
    """

    def __init__(
        self,
        store: DeploymentService,
        vercel: VercelProvider,
        http_get: Optional[Callable[[str, float], int]] = None,
        sleep: Callable[[float], None] = time.sleep,
        propagation_delay: float = 10.0,
        timeout: float = 15.0,
        redeploy_retries: int = 2,
    ):
        self.store = store
        self.vercel = vercel
        self.http_get = http_get or http_status
        self.sleep = sleep
        self.propagation_delay = propagation_delay
        self.timeout = timeout
        self.redeploy_retries = redeploy_retries

    def check(self, deployment_id: str, url: str, build_dir: str, max_redeploys: int = 2) -> str:
        self.store.append_log(deployment_id, f"{INFO} Waiting {self.propagation_delay:g}s before health check of {url}")
        self.sleep(self.propagation_delay)

        redeploys = 0
        while True:
            status_code = self.http_get(url, self.timeout)
            if status_code == 200:
                self.store.save_health_check(deployment_id, HealthCheckStatus.HEALTHY)
                self.store.append_log(deployment_id, f"{OK} Health check passed: {url} returned 200")
                logger.info(f"Deployment {deployment_id} healthy at {url}")
                return HealthCheckStatus.HEALTHY

            if redeploys >= max_redeploys:
                break

            redeploys += 1
            self.store.append_log(
                deployment_id,
                f"{WARN} Health check got status {status_code}, redeploying ({redeploys}/{max_redeploys})",
            )
            ok, _ = self.vercel.deploy(
                build_dir,
                deployment_id,
                max_retries=self.redeploy_retries,
                step_name="Vercel redeploy",
            )
            if not ok:
                logger.warning(f"Deployment {deployment_id}: redeploy {redeploys} failed")
            self.sleep(self.propagation_delay)

        self.store.save_health_check(deployment_id, HealthCheckStatus.UNHEALTHY)
        self.store.append_log(
            deployment_id,
            f"{WARN} Health check still failing after {max_redeploys} redeploy(s) (last status {status_code}); "
            f"the app is deployed but not responding, manual inspection of {url} recommended",
        )
        logger.warning(f"Deployment {deployment_id} unhealthy at {url}")
        return HealthCheckStatus.UNHEALTHY
