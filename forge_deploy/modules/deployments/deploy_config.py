from dataclasses import dataclass
from typing import Dict, List, Optional

from forge_deploy.config import Settings


@dataclass(frozen=True)
class DeployConfig:
    """
    Everything the deploy pipeline needs from the outside world.

    Built once from Settings and handed to the orchestrator and providers so
    that tokens reach provider CLIs as per-command environment overrides
    instead of through the global process environment.
    """
    github_token: Optional[str] = None
    github_org: str = ""
    git_author_name: str = "Forge Deploy"
    git_author_email: str = "deploy@forge.local"

    supabase_access_token: Optional[str] = None
    supabase_org_id: str = ""
    supabase_region: str = "us-east-1"

    vercel_token: Optional[str] = None
    vercel_scope: Optional[str] = None

    command_timeout_sec: float = 300
    max_retries: int = 3
    backoff_base: float = 2.0

    propagation_delay_sec: float = 10.0
    health_check_timeout_sec: float = 15.0
    max_redeploys: int = 2
    redeploy_retries: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeployConfig":
        return cls(
            github_token=settings.github_token,
            github_org=settings.github_org,
            git_author_name=settings.git_author_name,
            git_author_email=settings.git_author_email,
            supabase_access_token=settings.supabase_access_token,
            supabase_org_id=settings.supabase_org_id,
            supabase_region=settings.supabase_region,
            vercel_token=settings.vercel_token,
            vercel_scope=settings.vercel_scope,
            command_timeout_sec=settings.command_timeout_sec,
            max_retries=settings.deploy_max_retries,
            backoff_base=settings.deploy_backoff_base,
            propagation_delay_sec=settings.health_check_propagation_delay_sec,
            health_check_timeout_sec=settings.health_check_timeout_sec,
            max_redeploys=settings.health_check_max_redeploys,
            redeploy_retries=settings.health_check_redeploy_retries,
        )

    def github_env(self) -> Dict[str, str]:
        if not self.github_token:
            return {}
        return {"GH_TOKEN": self.github_token, "GITHUB_TOKEN": self.github_token}

    def supabase_env(self, db_password: Optional[str] = None) -> Dict[str, str]:
        env = {}
        if self.supabase_access_token:
            env["SUPABASE_ACCESS_TOKEN"] = self.supabase_access_token
        if db_password:
            env["SUPABASE_DB_PASSWORD"] = db_password
        return env

    def vercel_env(self) -> Dict[str, str]:
        if not self.vercel_token:
            return {}
        return {"VERCEL_TOKEN": self.vercel_token}

    def missing_credentials(self) -> list:
        """Names of settings that must be present before a deploy can start."""
        required = {
            "GITHUB_TOKEN": self.github_token,
            "GITHUB_ORG": self.github_org,
            "SUPABASE_ACCESS_TOKEN": self.supabase_access_token,
            "SUPABASE_ORG_ID": self.supabase_org_id,
            "VERCEL_TOKEN": self.vercel_token,
        }
        return [name for name, value in required.items() if not value]

    def provider_tokens(self) -> List[str]:
        return [t for t in (self.github_token, self.supabase_access_token, self.vercel_token) if t]
