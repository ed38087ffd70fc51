"""
Smoke tests against a running instance.

Runs lightweight HTTP checks:
- GET /health
- GET /health/ready (reported, not enforced)
- POST /api/webhooks/provider with an unrecognized event type

The webhook body is signed with PROVIDER_WEBHOOK_SECRET when it is set,
otherwise ?token=WEBHOOK_TOKEN is used. An unrecognized event type is stored
in the idempotency log but never changes any user's entitlement.
"""

from __future__ import annotations

import json
import os
import sys
import uuid
from pathlib import Path

import httpx

# לאפשר הרצה מכל תיקיה (python scripts/smoke_webhooks.py)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.config import settings  # noqa: E402
from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.core.signature import sign_hex  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _smoke_payload() -> bytes:
    payload = {
        "webhookId": f"smoke-{uuid.uuid4().hex}",
        "type": "smoke.test",
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False)

    base_url = _base_url()
    timeout = _timeout_seconds()

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp, expected_family=2)

        resp = client.get(f"{base_url}/health/ready")
        logger.info("Readiness", extra_data={"status_code": resp.status_code, "body": resp.json()})

        body = _smoke_payload()
        headers = {"Content-Type": "application/json"}
        params = {}
        if settings.PROVIDER_WEBHOOK_SECRET:
            headers[settings.WEBHOOK_SIGNATURE_HEADER] = sign_hex(body, settings.PROVIDER_WEBHOOK_SECRET)
        elif settings.WEBHOOK_TOKEN:
            params["token"] = settings.WEBHOOK_TOKEN

        webhook_url = f"{base_url}/api/webhooks/provider"
        logger.info(
            "Posting provider webhook payload",
            extra_data={"url": webhook_url, "signed": bool(settings.PROVIDER_WEBHOOK_SECRET)},
        )
        resp = client.post(webhook_url, content=body, headers=headers, params=params)
        _check_status(resp, expected_family=2)

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
