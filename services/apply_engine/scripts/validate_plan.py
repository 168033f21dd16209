from __future__ import annotations

import argparse
import json
import os
import sys

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
APPLY_ENGINE_DIR = os.path.abspath(os.path.join(SCRIPT_DIR, ".."))
if APPLY_ENGINE_DIR not in sys.path:
    sys.path.insert(0, APPLY_ENGINE_DIR)

from pydantic import ValidationError  # noqa: E402

from app.fs_adapter import FSAdapter  # noqa: E402
from app.models import Plan  # noqa: E402
from app.path_policy import PathPolicy  # noqa: E402
from app.settings import get_settings  # noqa: E402
from app.validator import PlanValidator  # noqa: E402


def main() -> int:
    ap = argparse.ArgumentParser(description="Validate a plan JSON file against the configured workspace.")
    ap.add_argument("plan_json", help="Path to a plan document (JSON)")
    args = ap.parse_args()

    settings = get_settings()
    try:
        with open(args.plan_json, "r", encoding="utf-8") as f:
            raw = json.load(f)
        plan = Plan.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        print(json.dumps({"ok": False, "error": "plan_unreadable", "detail": str(e)[:2000], "path": args.plan_json}))
        return 1

    validator = PlanValidator(FSAdapter(settings, PathPolicy(settings.allowlist)))
    report = validator.validate(plan)
    print(
        json.dumps(
            {
                "ok": report.valid,
                "plan_id": plan.id,
                "workspace_root": settings.workspace_root,
                "changes": len(plan.changes),
                "errors": report.errors,
            },
            indent=2,
        )
    )
    return 0 if report.valid else 2


if __name__ == "__main__":
    raise SystemExit(main())
