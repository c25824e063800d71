# Supabase table: deployments
# This file documents the expected database schema and the value sets
# stored in it. Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: uuid (primary key)
- project_id: uuid (foreign key to spec_projects.id, not null)
- user_id: uuid (foreign key to users.id, not null)
- project_name: text (not null)
- build_artifact_path: text (not null)
- status: text (not null, default: 'pending') - values: see DeploymentStatus
- deploy_log: text (not null, default: '') - append-only, one line per action
- provider_state: jsonb (not null, default: {}) - keys only ever added
- completed_steps: jsonb (not null, default: []) - step ids, only ever added
- deploy_url: text (nullable)
- health_check_status: text (nullable) - values: healthy, unhealthy
- last_health_check_at: timestamp (nullable)
- error_message: text (nullable)
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
- completed_at: timestamp (nullable)

Columns added to spec_projects:
- deploy_url: text (nullable)
- deployment_id: uuid (nullable)
- deployed_at: timestamp (nullable)
"""


class DeploymentStatus:
    PENDING = "pending"
    DEPLOYING_GITHUB = "deploying_github"
    DEPLOYING_SUPABASE = "deploying_supabase"
    DEPLOYING_VERCEL = "deploying_vercel"
    LIVE = "live"
    FAILED = "failed"


# Non-terminal walk; status may skip forward but never move backwards.
STATUS_ORDER = [
    DeploymentStatus.PENDING,
    DeploymentStatus.DEPLOYING_GITHUB,
    DeploymentStatus.DEPLOYING_SUPABASE,
    DeploymentStatus.DEPLOYING_VERCEL,
    DeploymentStatus.LIVE,
]

TERMINAL_STATUSES = {DeploymentStatus.LIVE, DeploymentStatus.FAILED}
IN_PROGRESS_STATUSES = {
    DeploymentStatus.PENDING,
    DeploymentStatus.DEPLOYING_GITHUB,
    DeploymentStatus.DEPLOYING_SUPABASE,
    DeploymentStatus.DEPLOYING_VERCEL,
}


class HealthCheckStatus:
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class StepId:
    GITHUB = "github"
    SUPABASE = "supabase"
    VERCEL = "vercel"


# Log glyphs
OK = "✅"
WARN = "⚠️"
FAIL = "❌"
INFO = "▶️"

# provider_state keys
GITHUB_URL = "github_url"
SUPABASE_PROJECT_REF = "supabase_project_ref"
SUPABASE_URL = "supabase_url"
ANON_KEY = "anon_key"
SERVICE_KEY = "service_key"
DB_PASSWORD = "db_password"
VERCEL_URL = "vercel_url"

SECRET_KEYS = (DB_PASSWORD, SERVICE_KEY, ANON_KEY)


def status_rank(status: str) -> int:
    """Position of status in the forward walk; failed ranks lowest so any run may leave it."""
    try:
        return STATUS_ORDER.index(status)
    except ValueError:
        return -1
