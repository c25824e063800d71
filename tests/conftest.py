"""
Shared fixtures: an in-memory stand-in for the Supabase table API, a scripted
command runner and a deploy config with every credential present.
"""

import copy
import json
import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest

from forge_deploy.modules.deployments.deploy_config import DeployConfig
from forge_deploy.modules.deployments.service import DeploymentService


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self._single = False
        self.order_by = None

    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.op = "update"
        self.payload = payload
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = (column, desc)
        return self

    def maybe_single(self):
        self._single = True
        return self

    def single(self):
        self._single = True
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self):
        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "insert":
            row = copy.deepcopy(self.payload)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", datetime.utcnow().isoformat())
            rows.append(row)
            return SimpleNamespace(data=[copy.deepcopy(row)])
        if self.op == "update":
            if self.table in self.db.fail_updates_for:
                raise Exception(f"connection reset while updating {self.table}")
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self.payload))
                    updated.append(copy.deepcopy(row))
            self.db.update_count += 1
            return SimpleNamespace(data=updated)
        matched = [copy.deepcopy(r) for r in rows if self._matches(r)]
        if self.order_by:
            column, desc = self.order_by
            matched.sort(key=lambda r: r.get(column) or "", reverse=desc)
        if self._single:
            return SimpleNamespace(data=matched[0] if matched else None)
        return SimpleNamespace(data=matched)


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.fail_updates_for = set()
        self.update_count = 0

    def table(self, name):
        return FakeQuery(self, name)

    def seed(self, table, row):
        self.tables.setdefault(table, []).append(copy.deepcopy(row))
        return row


class ScriptedRunner:
    """
    Stand-in for run_command. Responses are keyed by an argv prefix; the
    longest matching prefix wins. Each key holds a list consumed in order
    (the last entry repeats) whose items are (ok, output) tuples or callables
    taking (command, kwargs).
    """

    def __init__(self, responses=None):
        self.responses = {tuple(k): list(v) for k, v in (responses or {}).items()}
        self.calls = []

    def set(self, prefix, *results):
        self.responses[tuple(prefix)] = list(results)

    def __call__(self, command, **kwargs):
        self.calls.append((list(command), kwargs))
        best = None
        for prefix in self.responses:
            if tuple(command[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return True, ""
        queue = self.responses[best]
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(result):
            return result(command, kwargs)
        return result

    def count(self, *prefix):
        return sum(1 for command, _ in self.calls if tuple(command[:len(prefix)]) == prefix)


PROJECT_REF = "abcdefghijklmnopqrst"
ANON_KEY_VALUE = "anon-key-value-1234567890"
SERVICE_KEY_VALUE = "service-role-secret-0987654321"


def happy_responses():
    return {
        ("gh", "repo", "create"): [(True, "https://github.com/acme/my-app\n")],
        ("supabase", "projects", "create"): [
            (True, f"Created a new project my-app at https://supabase.com/dashboard/project/{PROJECT_REF}\n")
        ],
        ("supabase", "projects", "api-keys"): [(True, json.dumps([
            {"name": "anon", "api_key": ANON_KEY_VALUE},
            {"name": "service_role", "api_key": SERVICE_KEY_VALUE},
        ]))],
        ("vercel", "deploy"): [
            (True, "Production: https://my-app-abc123.vercel.app [12s]\nAliased: https://my-app.vercel.app [2s]\n")
        ],
    }


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def store(fake_supabase):
    return DeploymentService(fake_supabase)


@pytest.fixture
def runner():
    return ScriptedRunner(happy_responses())


@pytest.fixture
def config():
    return DeployConfig(
        github_token="gh-token",
        github_org="acme",
        supabase_access_token="sb-token",
        supabase_org_id="org-1",
        vercel_token="vc-token",
        propagation_delay_sec=0,
    )


@pytest.fixture
def build_dir(tmp_path):
    path = tmp_path / "build"
    path.mkdir()
    (path / "package.json").write_text('{"name": "my-app"}')
    return str(path)


@pytest.fixture
def project(fake_supabase):
    return fake_supabase.seed("spec_projects", {"id": "proj-1", "user_id": "user-1", "name": "My App"})


@pytest.fixture
def make_deployment(fake_supabase, project, build_dir):
    def _make(**overrides):
        row = {
            "id": str(uuid.uuid4()),
            "project_id": project["id"],
            "user_id": "user-1",
            "project_name": "My App",
            "build_artifact_path": build_dir,
            "status": "pending",
            "deploy_log": "",
            "provider_state": {},
            "completed_steps": [],
            "created_at": datetime.utcnow().isoformat(),
        }
        row.update(overrides)
        return fake_supabase.seed("deployments", row)
    return _make
