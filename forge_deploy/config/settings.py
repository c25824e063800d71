from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase (this service's own database)
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Required for background workers (RLS bypass)

    # GitHub (source control provider)
    github_token: Optional[str] = None
    github_org: str = ""
    git_author_name: str = "Forge Deploy"
    git_author_email: str = "deploy@forge.local"

    # Supabase Management (backend provider for deployed apps)
    supabase_access_token: Optional[str] = None
    supabase_org_id: str = ""
    supabase_region: str = "us-east-1"

    # Vercel (hosting provider)
    vercel_token: Optional[str] = None
    vercel_scope: Optional[str] = None  # Team slug; personal account when unset

    # Deploy pipeline tuning
    command_timeout_sec: int = 300
    deploy_max_retries: int = 3
    deploy_backoff_base: float = 2.0
    health_check_propagation_delay_sec: float = 10.0
    health_check_timeout_sec: float = 15.0
    health_check_max_redeploys: int = 2
    health_check_redeploy_retries: int = 2

    # App
    app_name: str = "forge-deploy-backend"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
