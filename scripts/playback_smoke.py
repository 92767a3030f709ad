#!/usr/bin/env python3
from __future__ import annotations

import json
import sys

from fastapi.testclient import TestClient

from api.main import create_app

DEFAULT_TRACK_ID = "dQw4w9WgXcQ"


def _preview(value) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)[:320]


def main() -> int:
    track_id = (sys.argv[1] if len(sys.argv) > 1 else DEFAULT_TRACK_ID).strip()
    checks = [
        ("/health", True),
        ("/api/bootstrap", True),
        (f"/api/playback/{track_id}/resolve", False),
    ]
    exit_code = 0
    with TestClient(create_app(), raise_server_exceptions=False) as client:
        for path, required in checks:
            print(f"\n[SMOKE] {path}")
            try:
                response = client.get(path)
                body = response.json()
            except Exception as exc:
                print(f"network/error={exc}")
                if required:
                    exit_code = 1
                continue
            print(f"status={response.status_code} ok={body.get('ok')}")
            if body.get("ok"):
                print(f"payload={_preview(body.get('data'))}")
            else:
                print(f"error={_preview(body.get('error'))}")
                if required:
                    exit_code = 1
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
