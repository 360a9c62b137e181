#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from event_notifier.config import get_settings  # noqa: E402
from event_notifier.runtime import build_runtime  # noqa: E402
from event_notifier.trigger_security import SIGNATURE_HEADER, TIMESTAMP_HEADER, sign_trigger_body  # noqa: E402

logger = logging.getLogger("run_reminder_tick")


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("NOTIFIER_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/notifications"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/notifications"


def _parse_now(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _post_signed_tick(base_url: str, payload: dict[str, Any], *, secret: str) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    timestamp = int(time.time())
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        TIMESTAMP_HEADER: str(timestamp),
    }
    if secret:
        headers[SIGNATURE_HEADER] = sign_trigger_body(secret=secret, timestamp=timestamp, body=body)

    request = urllib.request.Request(
        f"{base_url}/reminders/tick",
        data=body,
        headers=headers,
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=120) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST reminders/tick failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Trigger one event-reminder tick, either by POSTing a signed request to the "
            "notifier API (cron / scheduler adapter) or in-process with --local."
        )
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Notifier base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/notifications)."
        ),
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Run the tick in this process against the configured store and push sender.",
    )
    parser.add_argument("--dry-run", action="store_true", help="Evaluate windows and recipients without sending.")
    parser.add_argument(
        "--now",
        default=None,
        help="ISO-8601 timestamp to evaluate instead of the current time (dry runs, or when allowed).",
    )
    return parser.parse_args()


def main() -> int:
    _load_dotenv(ROOT_DIR / ".env")
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    args = parse_args()

    try:
        now_override = _parse_now(args.now)
    except ValueError as exc:
        raise SystemExit(f"--now must be an ISO-8601 timestamp: {exc}") from exc

    settings = get_settings()
    if args.local:
        runtime = build_runtime(settings)
        response = runtime.tick_service.run_tick(now_override, dry_run=args.dry_run)
        summary = response.model_dump(mode="json")
    else:
        payload: dict[str, Any] = {"dry_run": args.dry_run}
        if now_override is not None:
            payload["now_override"] = now_override.isoformat()
        summary = _post_signed_tick(
            _resolve_api_base_url(args.api_base_url),
            payload,
            secret=settings.trigger_secret.strip(),
        )

    logger.info(
        "tick complete eligible=%s sent=%s failed=%s failed_events=%s",
        summary.get("eligible_count"),
        summary.get("success_count"),
        summary.get("failure_count"),
        summary.get("failed_event_count"),
    )
    print(json.dumps(summary, indent=2))
    return 1 if summary.get("failed_event_count") else 0


if __name__ == "__main__":
    raise SystemExit(main())
