"""
Provider clients for GitHub, Supabase and Vercel.

All CLI argv construction and text parsing for the three providers lives here
so the orchestrator only deals in results. Swapping a CLI for a native SDK
means replacing one of these classes.
"""
import os
import re
import json
import string
import secrets
import logging
from typing import Any, Dict, List, Optional, Tuple

from forge_deploy.modules.deployments.deploy_config import DeployConfig
from forge_deploy.modules.deployments.retry import RetryingExecutor, output_tail
from forge_deploy.modules.deployments.models import FAIL, WARN

logger = logging.getLogger(__name__)

GITIGNORE_ENTRIES = [
    "# Dependencies",
    "node_modules/",
    "",
    "# Build output",
    ".next/",
    "out/",
    "dist/",
    "",
    "# Environment and secrets",
    ".env",
    ".env.*",
    "!.env.example",
    "*.pem",
    "",
    "# Provider state",
    ".vercel/",
    "supabase/.temp/",
    "supabase/.branches/",
    "",
    "# Scaffold internals",
    ".forge/",
    ".scaffold/",
    "",
    "# OS",
    ".DS_Store",
]

PROJECT_REF_PATTERN = re.compile(r"\b([a-z]{20})\b")
PROJECT_REF_URL_PATTERN = re.compile(r"/project/([a-z]{20})\b")
VERCEL_URL_PATTERN = re.compile(r"https://[a-zA-Z0-9.-]+\.vercel\.app")
GITHUB_URL_PATTERN = re.compile(r"https://github\.com/[\w.-]+/[\w.-]+")


def slugify(name: str, max_length: int = 50) -> str:
    """Lowercase alnum-and-dash slug usable as repo, project and Vercel names."""
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "app"


def generate_db_password(length: int = 32) -> str:
    """Random password with at least one lowercase, uppercase, digit and symbol."""
    length = max(length, 32)
    symbols = "-_.~"
    alphabet = string.ascii_letters + string.digits + symbols
    required = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
        secrets.choice(symbols),
    ]
    rest = [secrets.choice(alphabet) for _ in range(length - len(required))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class GitHubProvider:
    CREATE_NON_RETRYABLE = ["name already exists", "authentication"]

    def __init__(self, executor: RetryingExecutor, config: DeployConfig):
        self.executor = executor
        self.config = config

    def write_gitignore(self, build_dir: str) -> None:
        """Add the required entries to the artifact's .gitignore, keeping whatever it already lists."""
        path = os.path.join(build_dir, ".gitignore")
        existing = ""
        if os.path.exists(path):
            with open(path) as f:
                existing = f.read()
        present = {line.strip() for line in existing.splitlines()}
        missing = [entry for entry in GITIGNORE_ENTRIES if entry not in present]
        if not missing:
            return
        if existing and not existing.endswith("\n"):
            existing += "\n"
        with open(path, "w") as f:
            f.write(existing + "\n".join(missing) + "\n")
        logger.info(f"Updated .gitignore in {build_dir} (+{len(missing)} entries)")

    def init_and_commit(self, build_dir: str) -> Tuple[bool, str]:
        """git init, stage everything, commit. An already committed tree counts as success."""
        author = [
            "-c", f"user.name={self.config.git_author_name}",
            "-c", f"user.email={self.config.git_author_email}",
        ]
        commands = [
            ["git", "init"],
            ["git", "add", "-A"],
            ["git", *author, "commit", "-m", "Initial commit"],
            ["git", "branch", "-M", "main"],
        ]
        output = ""
        for command in commands:
            ok, output = self.executor.run_once(command, cwd=build_dir)
            if not ok:
                if command[-2:] == ["-m", "Initial commit"] and "nothing to commit" in output.lower():
                    continue
                return False, output
        return True, output

    def create_and_push(self, build_dir: str, slug: str, deployment_id: str) -> Tuple[bool, str]:
        return self.executor.run_with_retry(
            [
                "gh", "repo", "create", f"{self.config.github_org}/{slug}",
                "--private", "--source", ".", "--remote", "origin", "--push",
            ],
            step_name="GitHub repo create",
            deployment_id=deployment_id,
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
            non_retryable_patterns=self.CREATE_NON_RETRYABLE,
            cwd=build_dir,
            env=self.config.github_env(),
        )

    def repo_url(self, slug: str, output: str = "") -> str:
        match = GITHUB_URL_PATTERN.search(output or "")
        if match:
            return match.group(0).rstrip(".")
        return f"https://github.com/{self.config.github_org}/{slug}"


class SupabaseProvider:
    CREATE_NON_RETRYABLE = ["project limit", "quota", "already exists"]
    MIGRATE_NON_RETRYABLE = ["schema conflict", "permission denied"]

    def __init__(self, executor: RetryingExecutor, config: DeployConfig):
        self.executor = executor
        self.config = config

    def create_project(self, name: str, db_password: str, deployment_id: str) -> Tuple[bool, str]:
        # Password travels in the environment, never on argv.
        return self.executor.run_with_retry(
            [
                "supabase", "projects", "create", name,
                "--org-id", self.config.supabase_org_id,
                "--region", self.config.supabase_region,
            ],
            step_name="Supabase project create",
            deployment_id=deployment_id,
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
            non_retryable_patterns=self.CREATE_NON_RETRYABLE,
            env=self.config.supabase_env(db_password),
        )

    @staticmethod
    def parse_project_ref(output: str) -> Optional[str]:
        if not output:
            return None
        match = PROJECT_REF_URL_PATTERN.search(output)
        if match:
            return match.group(1)
        match = PROJECT_REF_PATTERN.search(output)
        return match.group(1) if match else None

    def find_project_ref(self, name: str, deployment_id: Optional[str] = None) -> Optional[str]:
        """List all projects in the account and pick the one called name."""
        ok, output = self.executor.run_once(
            ["supabase", "projects", "list", "--output", "json"],
            env=self.config.supabase_env(),
        )
        if not ok:
            logger.warning(f"Listing Supabase projects failed: {self.executor.redact(output_tail(output))}")
            if deployment_id:
                log_command_failure(self.executor, deployment_id, "Listing Supabase projects failed", output)
            return None
        try:
            projects = json.loads(output)
        except json.JSONDecodeError:
            projects = None
        if isinstance(projects, list):
            for project in projects:
                if isinstance(project, dict) and project.get("name") == name:
                    ref = project.get("id") or project.get("ref")
                    if ref:
                        return ref
            return None
        for line in output.splitlines():
            cells = [c.strip() for c in line.split("|")]
            if name in cells:
                ref = self.parse_project_ref(line)
                if ref:
                    return ref
        return None

    def link(self, build_dir: str, project_ref: str, db_password: str) -> Tuple[bool, str]:
        return self.executor.run_once(
            ["supabase", "link", "--project-ref", project_ref],
            cwd=build_dir,
            env=self.config.supabase_env(db_password),
        )

    def push_migrations(self, build_dir: str, db_password: str, deployment_id: str) -> Tuple[bool, str]:
        return self.executor.run_with_retry(
            ["supabase", "db", "push"],
            step_name="Supabase migrations",
            deployment_id=deployment_id,
            max_retries=self.config.max_retries,
            backoff_base=self.config.backoff_base,
            non_retryable_patterns=self.MIGRATE_NON_RETRYABLE,
            cwd=build_dir,
            env=self.config.supabase_env(db_password),
        )

    def fetch_api_keys(self, project_ref: str) -> Tuple[str, str]:
        """Best effort. Returns (anon_key, service_key); either may be blank."""
        ok, output = self.executor.run_once(
            ["supabase", "projects", "api-keys", "--project-ref", project_ref, "--output", "json"],
            env=self.config.supabase_env(),
        )
        if not ok:
            return "", ""
        return self.parse_api_keys(output)

    @staticmethod
    def parse_api_keys(output: str) -> Tuple[str, str]:
        keys: Dict[str, str] = {}
        try:
            data: Any = json.loads(output)
        except (json.JSONDecodeError, TypeError):
            data = None
        if isinstance(data, list):
            for entry in data:
                if isinstance(entry, dict) and entry.get("name"):
                    keys[entry["name"]] = entry.get("api_key") or ""
        else:
            for line in (output or "").splitlines():
                cells = [c.strip() for c in line.split("|") if c.strip()]
                if len(cells) >= 2:
                    keys[cells[0].lower()] = cells[1]
        return keys.get("anon", ""), keys.get("service_role", "")

    @staticmethod
    def project_url(project_ref: str) -> str:
        return f"https://{project_ref}.supabase.co"


class VercelProvider:
    DEPLOY_NON_RETRYABLE = ["invalid token", "project not found"]

    def __init__(self, executor: RetryingExecutor, config: DeployConfig):
        self.executor = executor
        self.config = config

    def _scope_args(self) -> List[str]:
        return ["--scope", self.config.vercel_scope] if self.config.vercel_scope else []

    def link(self, build_dir: str, slug: str) -> Tuple[bool, str]:
        return self.executor.run_once(
            ["vercel", "link", "--yes", "--project", slug, *self._scope_args()],
            cwd=build_dir,
            env=self.config.vercel_env(),
        )

    def set_env(self, build_dir: str, name: str, value: str, deployment_id: str) -> bool:
        """Set a production env var, value on stdin. An existing variable is replaced."""
        command = ["vercel", "env", "add", name, "production", *self._scope_args()]
        ok, output = self.executor.run_once(
            command, cwd=build_dir, env=self.config.vercel_env(), input_text=value
        )
        if not ok and "already exists" in output.lower():
            self.executor.run_once(
                ["vercel", "env", "rm", name, "production", "--yes", *self._scope_args()],
                cwd=build_dir,
                env=self.config.vercel_env(),
            )
            ok, output = self.executor.run_once(
                command, cwd=build_dir, env=self.config.vercel_env(), input_text=value
            )
        if not ok:
            self.executor.append_log(
                deployment_id,
                f"{WARN} Could not set Vercel env {name}: {self.executor.redact(output_tail(output))}",
            )
        return ok

    def deploy(
        self,
        build_dir: str,
        deployment_id: str,
        max_retries: Optional[int] = None,
        step_name: str = "Vercel deploy",
    ) -> Tuple[bool, str]:
        return self.executor.run_with_retry(
            ["vercel", "deploy", "--prod", "--yes", *self._scope_args()],
            step_name=step_name,
            deployment_id=deployment_id,
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            backoff_base=self.config.backoff_base,
            non_retryable_patterns=self.DEPLOY_NON_RETRYABLE,
            cwd=build_dir,
            env=self.config.vercel_env(),
        )

    @staticmethod
    def parse_deploy_url(output: str) -> Optional[str]:
        """Prefer the aliased production URL, then the first vercel.app URL printed."""
        first = None
        for line in (output or "").splitlines():
            match = VERCEL_URL_PATTERN.search(line)
            if not match:
                continue
            if line.strip().lower().startswith("aliased"):
                return match.group(0)
            if first is None:
                first = match.group(0)
        return first

    @staticmethod
    def fallback_url(slug: str) -> str:
        return f"https://{slug}.vercel.app"


def log_command_failure(executor: RetryingExecutor, deployment_id: str, what: str, output: str) -> None:
    executor.append_log(deployment_id, f"{FAIL} {what}: {executor.redact(output_tail(output))}")
