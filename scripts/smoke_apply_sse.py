#!/usr/bin/env python3
"""Transparent apply-engine smoke test.

Registers a one-file plan, applies it, and prints the raw SSE stream that the
apply produced (progress events, completion, errors).

Usage:
  python3 scripts/smoke_apply_sse.py src/smoke.txt "hello" \
    --api http://127.0.0.1:5140

Notes:
- Requires the apply engine running with `src/` in its allow-list.
- The target file must not exist yet (the plan creates it).
"""

from __future__ import annotations

import argparse
import json
import threading
import urllib.error
import urllib.request


def _iter_sse_lines(resp):
    while True:
        chunk = resp.readline()
        if not chunk:
            break
        yield chunk.decode("utf-8", errors="replace").rstrip("\n")


def _post_json(url: str, body: dict, correlation_id: str) -> dict:
    req = urllib.request.Request(url, data=json.dumps(body).encode("utf-8"), method="POST")
    req.add_header("Content-Type", "application/json")
    req.add_header("x-correlation-id", correlation_id)
    with urllib.request.urlopen(req, timeout=60) as resp:
        return json.loads(resp.read().decode("utf-8") or "{}")


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("file", help="Relative path the plan creates")
    ap.add_argument("content", help="File content")
    ap.add_argument("--api", default="http://127.0.0.1:5140", help="Apply engine base URL")
    ap.add_argument("--correlation-id", default="smoke-apply", help="Correlation id for every request")
    ap.add_argument("--events", type=int, default=4, help="Number of SSE events to read before exiting")
    args = ap.parse_args()

    base = args.api.rstrip("/")
    stream_url = f"{base}/stream?limit={args.events}"
    print("=== STREAM ===")
    print("GET", stream_url)
    print("")

    connected = threading.Event()
    lines: list[str] = []

    def reader() -> None:
        try:
            with urllib.request.urlopen(urllib.request.Request(stream_url, headers={"Accept": "text/event-stream"}), timeout=60) as resp:
                for line in _iter_sse_lines(resp):
                    lines.append(line)
                    if line.startswith(": connected"):
                        connected.set()
        except Exception as e:
            lines.append(f"!! stream error: {e}")
        finally:
            connected.set()

    t = threading.Thread(target=reader, daemon=True)
    t.start()
    connected.wait(timeout=10)

    plan = {
        "summary": "smoke: create one file",
        "plan": {"steps": [{"id": "s1", "description": "create file", "type": "generate"}]},
        "changes": [{"file": args.file, "op": "create", "applyMethod": "replaceFile", "content": args.content}],
    }
    try:
        registered = _post_json(f"{base}/api/ai/plan", plan, args.correlation_id)
        print("=== PLAN ===")
        print(json.dumps(registered, indent=2, ensure_ascii=False))
        print("")

        result = _post_json(f"{base}/api/ai/plan/{registered['id']}/apply", {"options": {"formatOnSave": False}}, args.correlation_id)
        print("=== APPLY ===")
        print(json.dumps(result, indent=2, ensure_ascii=False))
        print("")
    except urllib.error.HTTPError as e:
        print("HTTPError:", e.code)
        print(e.read().decode("utf-8", errors="replace"))
        return 1
    except Exception as e:
        print("Error:", str(e))
        return 1

    t.join(timeout=30)
    print("=== SSE (raw) ===")
    for line in lines:
        print(line)
        if line.startswith("data:"):
            try:
                ev = json.loads(line.split(":", 1)[1].strip())
                print("--- parsed ---")
                print(json.dumps(ev, indent=2, ensure_ascii=False))
            except json.JSONDecodeError:
                pass
    return 0 if result.get("success") else 2


if __name__ == "__main__":
    raise SystemExit(main())
