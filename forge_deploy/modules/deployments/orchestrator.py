import os
import time
import logging
from typing import Callable, Optional, Tuple

from forge_deploy.modules.deployments import models as m
from forge_deploy.modules.deployments.models import DeploymentStatus, StepId
from forge_deploy.modules.deployments.command_runner import run_command
from forge_deploy.modules.deployments.deploy_config import DeployConfig
from forge_deploy.modules.deployments.exceptions import (
    DeploymentNotFound,
    DeploymentStoreError,
    StepFailed,
)
from forge_deploy.modules.deployments.health_check import HealthChecker
from forge_deploy.modules.deployments.providers import (
    GitHubProvider,
    SupabaseProvider,
    VercelProvider,
    generate_db_password,
    log_command_failure,
    slugify,
)
from forge_deploy.modules.deployments.retry import RetryingExecutor, output_tail
from forge_deploy.modules.deployments.schemas import DeploymentState
from forge_deploy.modules.deployments.service import DeploymentService
from forge_deploy.modules.events.service import DeploymentEvent, EventService

logger = logging.getLogger(__name__)

# Env var names set on the Vercel project, keyed by provider_state key.
VERCEL_ENV_VARS = [
    ("NEXT_PUBLIC_SUPABASE_URL", m.SUPABASE_URL),
    ("NEXT_PUBLIC_SUPABASE_ANON_KEY", m.ANON_KEY),
    ("SUPABASE_SERVICE_ROLE_KEY", m.SERVICE_KEY),
]


def resume_flags(state: DeploymentState) -> Tuple[bool, bool]:
    """(skip_github, skip_supabase) for a loaded deployment. Vercel always runs."""
    completed = set(state.completed_steps or [])
    provider_state = state.provider_state or {}
    skip_github = StepId.GITHUB in completed or (
        state.status in (DeploymentStatus.DEPLOYING_SUPABASE, DeploymentStatus.DEPLOYING_VERCEL)
        and m.GITHUB_URL in provider_state
    )
    skip_supabase = StepId.SUPABASE in completed or (
        state.status == DeploymentStatus.DEPLOYING_VERCEL
        and m.SUPABASE_PROJECT_REF in provider_state
    )
    return skip_github, skip_supabase


class DeploymentOrchestrator:
    """
    Sequences init -> github -> supabase -> vercel -> finalize for one deployment.

    Each step persists its artifacts and a completion marker before the next
    one starts, so an aborted or failed run can be re-entered with the same
    deployment id and only the unfinished steps run again.
    """

    def __init__(
        self,
        store: DeploymentService,
        config: DeployConfig,
        events: Optional[EventService] = None,
        runner: Callable = run_command,
        sleep: Callable[[float], None] = time.sleep,
        http_get: Optional[Callable[[str, float], int]] = None,
    ):
        self.store = store
        self.config = config
        self.events = events
        self.executor = RetryingExecutor(
            store.append_log,
            runner=runner,
            sleep=sleep,
            default_timeout=config.command_timeout_sec,
        )
        self.github = GitHubProvider(self.executor, config)
        self.supabase = SupabaseProvider(self.executor, config)
        self.vercel = VercelProvider(self.executor, config)
        for token in config.provider_tokens():
            self.executor.register_secret(token)
        self.health_checker = HealthChecker(
            store,
            self.vercel,
            http_get=http_get,
            sleep=sleep,
            propagation_delay=config.propagation_delay_sec,
            timeout=config.health_check_timeout_sec,
            redeploy_retries=config.redeploy_retries,
        )

    def deploy(self, deployment_id: str, project_id: str, project_name: str, build_artifact_path: str) -> None:
        """Run or resume the pipeline. All results are written to the deployment record."""
        try:
            state = self.store.load(deployment_id)
        except DeploymentNotFound:
            logger.error(f"Deployment {deployment_id} not found")
            raise

        if state.status == DeploymentStatus.LIVE:
            logger.warning(f"Deployment {deployment_id} is already live, nothing to do")
            return

        for key in m.SECRET_KEYS:
            self.executor.register_secret(state.provider_state.get(key))

        slug = slugify(project_name)
        try:
            skip_github, skip_supabase = self._init(state, build_artifact_path)

            if skip_github:
                self.store.append_log(
                    deployment_id,
                    f"{m.OK} GitHub already done, skipping ({state.provider_state.get(m.GITHUB_URL)})",
                )
            else:
                self._run_github(deployment_id, slug, build_artifact_path)

            if skip_supabase:
                self.store.append_log(
                    deployment_id,
                    f"{m.OK} Supabase already done, skipping ({state.provider_state.get(m.SUPABASE_URL)})",
                )
            else:
                self._run_supabase(deployment_id, slug, build_artifact_path)

            deploy_url = self._run_vercel(deployment_id, slug, build_artifact_path)
            self._finalize(deployment_id, project_id, deploy_url)
        except StepFailed as e:
            self._fail(deployment_id, e.message)
            return
        except DeploymentStoreError as e:
            logger.error(f"Deployment {deployment_id}: state write failed: {e}")
            self._fail(deployment_id, f"Could not persist deployment state: {e}")
            return

        self._health_check(deployment_id, deploy_url, build_artifact_path)

    # ---- steps ----------------------------------------------------------

    def _init(self, state: DeploymentState, build_dir: str) -> Tuple[bool, bool]:
        deployment_id = state.id
        missing = self.config.missing_credentials()
        if missing:
            raise StepFailed("init", f"Missing provider credentials: {', '.join(missing)}")
        if not os.path.isdir(build_dir):
            raise StepFailed("init", f"Build artifact not found at {build_dir}")

        skip_github, skip_supabase = resume_flags(state)
        first_status = (
            DeploymentStatus.DEPLOYING_VERCEL if skip_supabase and skip_github
            else DeploymentStatus.DEPLOYING_SUPABASE if skip_github
            else DeploymentStatus.DEPLOYING_GITHUB
        )
        # A run that died mid-step left a status ahead of where this run restarts.
        if m.status_rank(state.status) > m.status_rank(first_status):
            self.store.append_log(deployment_id, f"{m.WARN} Previous run was interrupted during {state.status}")
            self.store.save_status(deployment_id, DeploymentStatus.FAILED)

        if state.status == DeploymentStatus.PENDING:
            self.store.append_log(deployment_id, f"{m.INFO} Starting deployment")
        else:
            done = [s for s, skip in ((StepId.GITHUB, skip_github), (StepId.SUPABASE, skip_supabase)) if skip]
            self.store.append_log(
                deployment_id,
                f"{m.INFO} Resuming deployment (from {state.status}; completed: {', '.join(done) or 'none'})",
            )
        self._emit(state, DeploymentEvent.STARTED, {"resumed": state.status != DeploymentStatus.PENDING})
        return skip_github, skip_supabase

    def _run_github(self, deployment_id: str, slug: str, build_dir: str) -> None:
        self.store.save_status(deployment_id, DeploymentStatus.DEPLOYING_GITHUB)
        self.store.append_log(deployment_id, f"{m.INFO} Creating GitHub repository {self.config.github_org}/{slug}")

        self.github.write_gitignore(build_dir)
        ok, output = self.github.init_and_commit(build_dir)
        if not ok:
            log_command_failure(self.executor, deployment_id, "Local git commit failed", output)
            raise StepFailed(StepId.GITHUB, "Local git commit failed")

        ok, output = self.github.create_and_push(build_dir, slug, deployment_id)
        if not ok:
            raise StepFailed(StepId.GITHUB, "GitHub repository creation failed")

        github_url = self.github.repo_url(slug, output)
        self.store.save_provider_state(deployment_id, {m.GITHUB_URL: github_url})
        self.store.mark_step_completed(deployment_id, StepId.GITHUB)
        self.store.append_log(deployment_id, f"{m.OK} GitHub repository ready: {github_url}")

    def _run_supabase(self, deployment_id: str, slug: str, build_dir: str) -> None:
        self.store.save_status(deployment_id, DeploymentStatus.DEPLOYING_SUPABASE)
        self.store.append_log(deployment_id, f"{m.INFO} Creating Supabase project {slug}")

        db_password = generate_db_password()
        self.executor.register_secret(db_password)

        ok, output = self.supabase.create_project(slug, db_password, deployment_id)
        if not ok:
            raise StepFailed(StepId.SUPABASE, "Supabase project creation failed")

        project_ref = self.supabase.parse_project_ref(output)
        if not project_ref:
            self.store.append_log(deployment_id, f"{m.WARN} Project ref not in create output, looking it up by name")
            project_ref = self.supabase.find_project_ref(slug, deployment_id)
        if not project_ref:
            self.store.append_log(deployment_id, f"{m.FAIL} Could not determine Supabase project ref for {slug}")
            raise StepFailed(StepId.SUPABASE, "Could not determine Supabase project reference")
        supabase_url = self.supabase.project_url(project_ref)
        self.store.append_log(deployment_id, f"{m.OK} Supabase project created: {supabase_url}")

        ok, output = self.supabase.link(build_dir, project_ref, db_password)
        if not ok:
            self.store.append_log(
                deployment_id,
                f"{m.WARN} Supabase link failed, continuing: {self.executor.redact(output_tail(output))}",
            )

        ok, output = self.supabase.push_migrations(build_dir, db_password, deployment_id)
        if not ok:
            raise StepFailed(StepId.SUPABASE, "Supabase migrations failed")
        self.store.append_log(deployment_id, f"{m.OK} Database migrations applied")

        anon_key, service_key = self.supabase.fetch_api_keys(project_ref)
        self.executor.register_secret(anon_key)
        self.executor.register_secret(service_key)
        if not anon_key or not service_key:
            self.store.append_log(deployment_id, f"{m.WARN} Could not read Supabase API keys, env vars will be incomplete")

        self.store.save_provider_state(deployment_id, {
            m.SUPABASE_PROJECT_REF: project_ref,
            m.SUPABASE_URL: supabase_url,
            m.ANON_KEY: anon_key,
            m.SERVICE_KEY: service_key,
            m.DB_PASSWORD: db_password,
        })
        self.store.mark_step_completed(deployment_id, StepId.SUPABASE)
        self.store.append_log(deployment_id, f"{m.OK} Supabase ready")

    def _run_vercel(self, deployment_id: str, slug: str, build_dir: str) -> str:
        self.store.save_status(deployment_id, DeploymentStatus.DEPLOYING_VERCEL)
        self.store.append_log(deployment_id, f"{m.INFO} Linking Vercel project {slug}")

        ok, output = self.vercel.link(build_dir, slug)
        if not ok:
            log_command_failure(self.executor, deployment_id, "Vercel link failed", output)
            raise StepFailed(StepId.VERCEL, "Vercel project link failed")

        provider_state = self.store.load(deployment_id).provider_state
        env_set = []
        for env_name, key in VERCEL_ENV_VARS:
            value = provider_state.get(key)
            if not value:
                continue
            if self.vercel.set_env(build_dir, env_name, value, deployment_id):
                env_set.append(env_name)
        if env_set:
            self.store.append_log(deployment_id, f"{m.OK} Vercel env set: {', '.join(env_set)}")

        self.store.append_log(deployment_id, f"{m.INFO} Deploying to Vercel production")
        ok, output = self.vercel.deploy(build_dir, deployment_id)
        if not ok:
            raise StepFailed(StepId.VERCEL, "Vercel deployment failed")

        # a re-run keeps the URL recorded the first time so deploy_url and provider_state agree
        deploy_url = provider_state.get(m.VERCEL_URL) or self.vercel.parse_deploy_url(output)
        if not deploy_url:
            deploy_url = self.vercel.fallback_url(slug)
            self.store.append_log(deployment_id, f"{m.WARN} Deploy URL not in output, using {deploy_url}")

        self.store.save_provider_state(deployment_id, {m.VERCEL_URL: deploy_url})
        self.store.set_deploy_url(deployment_id, deploy_url)
        self.store.mark_step_completed(deployment_id, StepId.VERCEL)
        self.store.append_log(deployment_id, f"{m.OK} Vercel deployment ready: {deploy_url}")
        return deploy_url

    def _finalize(self, deployment_id: str, project_id: str, deploy_url: str) -> None:
        state = self.store.load(deployment_id)
        provider_state = state.provider_state
        summary = " | ".join(
            f"{label}: {provider_state[key]}"
            for label, key in (("GitHub", m.GITHUB_URL), ("Supabase", m.SUPABASE_URL), ("Vercel", m.VERCEL_URL))
            if provider_state.get(key)
        )
        # live is terminal: no write that can fail may follow it
        self.store.update_project_deploy_url(project_id, deployment_id, deploy_url)
        self.store.append_log(deployment_id, f"{m.OK} Deployment live at {deploy_url} ({summary})")
        self.store.save_status(deployment_id, DeploymentStatus.LIVE)
        self._emit(state, DeploymentEvent.LIVE, {"deploy_url": deploy_url})
        logger.info(f"Deployment {deployment_id} live at {deploy_url}")

    def _health_check(self, deployment_id: str, deploy_url: str, build_dir: str) -> None:
        try:
            health = self.health_checker.check(
                deployment_id, deploy_url, build_dir, max_redeploys=self.config.max_redeploys
            )
        except DeploymentStoreError as e:
            logger.error(f"Deployment {deployment_id}: could not record health check: {e}")
            return
        try:
            state = self.store.load(deployment_id)
        except DeploymentStoreError as e:
            logger.warning(f"Deployment {deployment_id}: reload after health check failed: {e}")
            return
        self._emit(state, DeploymentEvent.HEALTH_CHECKED, {"health_check_status": health, "deploy_url": deploy_url})

    def _fail(self, deployment_id: str, message: str) -> None:
        logger.error(f"Deployment {deployment_id} failed: {message}")
        try:
            self.store.append_log(deployment_id, f"{m.FAIL} Deployment failed: {message}")
            self.store.set_error(deployment_id, message)
            self.store.save_status(deployment_id, DeploymentStatus.FAILED)
        except DeploymentStoreError as e:
            logger.error(f"Deployment {deployment_id}: could not record failure: {e}")
            return
        try:
            state = self.store.load(deployment_id)
        except DeploymentStoreError:
            return
        self._emit(state, DeploymentEvent.FAILED, {"error": message})

    def _emit(self, state: DeploymentState, event_type: str, payload: dict) -> None:
        if self.events is None:
            return
        self.events.emit(
            event_type,
            "deployment",
            state.id,
            actor_id=state.user_id,
            payload=dict(payload, project_id=state.project_id),
        )
