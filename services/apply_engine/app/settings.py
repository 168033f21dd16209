from __future__ import annotations

from dataclasses import dataclass, field
import os

import yaml


DEFAULT_ALLOWLIST: list[str] = [
    "src/",
    "public/",
    "components/",
    "pages/",
    "styles/",
    "utils/",
    "hooks/",
    "services/",
    "types/",
    "tests/",
    "__tests__/",
    "docs/",
    "README.md",
    "package.json",
    "tsconfig.json",
    "vite.config.ts",
    "tailwind.config.js",
    ".env.example",
]


@dataclass(frozen=True)
class Settings:
    workspace_root: str
    allowlist: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWLIST))
    env: str = "development"
    db_url: str | None = None
    plan_ttl_s: int = 86400
    txn_max_age_s: int = 86400
    janitor_interval_s: int = 3600
    max_files_changed: int = 10
    build_cmd: list[str] = field(default_factory=lambda: ["npm", "run", "build"])
    build_debounce_ms: int = 2000
    preview_port: int = 4173
    format_cmd: list[str] | None = None
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    session_log_enabled: bool = True

    @property
    def state_dir(self) -> str:
        # Kept beside (not inside) the workspace so the tree walk never sees it.
        return os.path.join(_repo_root_from_workspace(self.workspace_root), ".apply")

    @property
    def is_production(self) -> bool:
        return self.env == "production"


def _truthy(s: str | None) -> bool:
    return str(s or "").strip().lower() in ("1", "true", "yes", "y", "on")


def _repo_root_from_workspace(workspace_root: str) -> str:
    return os.path.abspath(os.path.join(workspace_root, ".."))


def _int_or(v: str | None, fallback: int) -> int:
    try:
        return int(str(v).strip())
    except Exception:
        return fallback


def _parse_allowlist(env_value: str | None, fallback: list[str]) -> list[str]:
    raw = str(env_value or "").strip()
    if not raw:
        return [p.replace("\\", "/") for p in fallback]
    return [p.strip().replace("\\", "/") for p in raw.split(",") if p.strip()]


def _load_dotenv(path: str) -> dict[str, str]:
    """
    Minimal .env reader (no external deps).
    Supports lines like:
      KEY=value
      KEY="value"
      export KEY=value
    Ignores comments and blank lines.
    """
    out: dict[str, str] = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw in f.read().splitlines():
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[len("export ") :].strip()
                if "=" not in line:
                    continue
                k, v = line.split("=", 1)
                key = k.strip()
                val = v.strip()
                if not key:
                    continue
                if (val.startswith('"') and val.endswith('"')) or (val.startswith("'") and val.endswith("'")):
                    val = val[1:-1]
                out[key] = val
    except Exception:
        return {}
    return out


def load_policy_allowlist(path: str) -> list[str] | None:
    """
    Read an allow-list from a YAML policy file:

      allowlist:
        - src/
        - README.md

    Returns None when the file is missing or has no usable list.
    """
    if not os.path.isfile(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        return None
    entries = raw.get("allowlist")
    if not isinstance(entries, list):
        return None
    out = [str(e).strip().replace("\\", "/") for e in entries if str(e or "").strip()]
    return out or None


def get_settings() -> Settings:
    workspace_root = os.path.abspath(os.environ.get("APPLY_WORKSPACE_ROOT") or os.getcwd())

    # If env vars aren't exported for the process, fall back to the repo .env.
    dotenv = _load_dotenv(os.path.join(_repo_root_from_workspace(workspace_root), ".env"))

    def env_or_dotenv(key: str) -> str | None:
        return os.environ.get(key) or dotenv.get(key)

    policy_path = env_or_dotenv("APPLY_POLICY_FILE") or os.path.join(
        _repo_root_from_workspace(workspace_root), ".apply", "policy.yaml"
    )
    allowlist = _parse_allowlist(env_or_dotenv("APPLY_ALLOWLIST"), [])
    if not allowlist:
        allowlist = load_policy_allowlist(policy_path) or list(DEFAULT_ALLOWLIST)

    format_cmd_raw = (env_or_dotenv("APPLY_FORMAT_CMD") or "").strip()
    build_cmd_raw = (env_or_dotenv("APPLY_BUILD_CMD") or "npm run build").strip()

    return Settings(
        workspace_root=workspace_root,
        allowlist=allowlist,
        env=(env_or_dotenv("APPLY_ENV") or "development").strip().lower(),
        db_url=env_or_dotenv("APPLY_DB_URL") or None,
        plan_ttl_s=_int_or(env_or_dotenv("APPLY_PLAN_TTL_S"), 86400),
        txn_max_age_s=_int_or(env_or_dotenv("APPLY_TXN_MAX_AGE_S"), 86400),
        janitor_interval_s=max(1, _int_or(env_or_dotenv("APPLY_JANITOR_INTERVAL_S"), 3600)),
        max_files_changed=_int_or(env_or_dotenv("APPLY_MAX_FILES_CHANGED"), 10),
        build_cmd=build_cmd_raw.split(),
        build_debounce_ms=max(0, _int_or(env_or_dotenv("APPLY_BUILD_DEBOUNCE_MS"), 2000)),
        preview_port=_int_or(env_or_dotenv("APPLY_PREVIEW_PORT"), 4173),
        format_cmd=format_cmd_raw.split() if format_cmd_raw else None,
        allowed_origins=[
            env_or_dotenv("APPLY_ALLOWED_ORIGIN") or "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        session_log_enabled=_truthy(env_or_dotenv("APPLY_SESSION_LOG") or "1"),
    )
