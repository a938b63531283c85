"""
Webhook Service - notifies a job's callback URL about terminal and narration events.

Polling stays the primary way to follow a job; webhooks are best effort:
- Deliveries run in background tasks and never change the job record
- Bodies are signed with HMAC-SHA256 when CLIPFORGE_WEBHOOK_SECRET is set
- Network errors and 408/429/5xx responses are retried with exponential backoff;
  any other non-2xx response is final
"""

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from clipforge.config import Settings, get_settings
from clipforge.services.job_store import Job, JobStatus, NarrationStatus

logger = logging.getLogger(__name__)


RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
SIGNATURE_HEADER = "X-Clipforge-Webhook-Signature"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DeliveryResult:
    """Outcome of delivering one event."""

    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0


@dataclass
class JobEvent:
    """
    Body of a webhook notification.

    Events: job.completed, job.failed, job.cancelled, narration.completed,
    narration.failed.
    """

    event: str
    job_id: str
    status: str
    progress_percent: float
    occurred_at: str = field(default_factory=_utc_now)
    stage: Optional[str] = None
    narration_status: Optional[str] = None
    error: Optional[str] = None
    output: Optional[dict[str, Any]] = None

    @classmethod
    def from_job(cls, job: Job, event: str) -> "JobEvent":
        output = None
        if job.status == JobStatus.COMPLETED:
            download_url = f"/clips/jobs/{job.job_id}/download"
            output = {"download_url": download_url, "output_size_bytes": job.output_size_bytes}
            if job.narration_status == NarrationStatus.DONE:
                output["narrated_download_url"] = f"{download_url}?narration=true"

        return cls(
            event=event,
            job_id=job.job_id,
            status=job.status.value,
            progress_percent=job.progress_percent,
            stage=job.stage,
            narration_status=job.narration_status.value if job.narration_status else None,
            error=job.narration_error if event.startswith("narration.") else job.error,
            output=output,
        )

    def to_dict(self) -> dict[str, Any]:
        """Event fields, leaving out the optional ones that are unset."""
        return {key: value for key, value in asdict(self).items() if value is not None}


class WebhookService:
    """Signs and delivers job events; built once at startup and injected."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ):
        settings = settings or get_settings()
        self.timeout = timeout_seconds
        self.max_attempts = max_attempts
        self.backoff = backoff_seconds
        self._secret = settings.clipforge_webhook_secret
        self._in_flight: set[asyncio.Task] = set()

        if not self._secret:
            logger.warning("CLIPFORGE_WEBHOOK_SECRET not configured - webhooks will not be signed")

    def sign(self, body: bytes) -> Optional[str]:
        """Signature header value (``sha256=<hex>``) for a body, or None when unsigned."""
        if not self._secret:
            return None
        digest = hmac.new(self._secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return f"sha256={digest}"

    async def deliver(self, url: str, event: JobEvent) -> DeliveryResult:
        """
        POST an event to ``url``, retrying transient failures.

        Never raises for delivery problems; the result says what happened.
        """
        if not url:
            return DeliveryResult(delivered=False, error="No callback URL")

        # The signature covers these exact bytes
        body = json.dumps(event.to_dict(), separators=(",", ":"), sort_keys=True).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Clipforge/1.0",
            "X-Clipforge-Event": event.event,
            "X-Clipforge-Job-Id": event.job_id,
        }
        signature = self.sign(body)
        if signature:
            headers[SIGNATURE_HEADER] = signature

        error: Optional[str] = None
        status_code: Optional[int] = None
        attempt = 0

        while attempt < self.max_attempts:
            attempt += 1
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, content=body, headers=headers)
            except httpx.TimeoutException:
                error = "Request timed out"
            except httpx.RequestError as e:
                error = f"Request error: {e}"
            else:
                status_code = response.status_code
                if response.is_success:
                    logger.info(f"Webhook {event.event} for job {event.job_id} delivered (attempt {attempt})")
                    return DeliveryResult(delivered=True, status_code=status_code, attempts=attempt)
                error = f"HTTP {status_code}: {response.text[:200]}"
                if status_code not in RETRYABLE_STATUS_CODES:
                    logger.warning(f"Webhook {event.event} for job {event.job_id} rejected: {error}")
                    break

            logger.warning(f"Webhook {event.event} to {url} failed (attempt {attempt}/{self.max_attempts}): {error}")
            if attempt < self.max_attempts:
                await asyncio.sleep(self.backoff * 2 ** (attempt - 1))

        logger.error(f"Giving up on webhook {event.event} for job {event.job_id} after {attempt} attempts")
        return DeliveryResult(delivered=False, status_code=status_code, error=error, attempts=attempt)

    def notify(self, url: str, event: JobEvent) -> None:
        """Deliver in the background; must be called from a running event loop."""
        task = asyncio.create_task(self.deliver(url, event), name=f"webhook-{event.job_id}")
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def drain(self, timeout: float = 5.0) -> None:
        """Give in-flight deliveries a chance to finish, then cancel the rest."""
        tasks = list(self._in_flight)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} undelivered webhooks at shutdown")
