"""Message queue consumer for transcription jobs.

Pulls messages from a Cloudflare Queue via the HTTP pull API. Each
message names a job; the job is claimed by id so that duplicate or late
deliveries are dropped without side effects. Messages are acked on
success, retried (abandoned) while the job still has retry budget, and
routed to a dead-letter queue once the job has failed permanently.
"""

from __future__ import annotations

import json
import logging
import math
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx

from transcription_worker.pipeline import JobCoordinator, JobOutcome
from transcription_worker.queue.interface import JobConsumer
from transcription_worker.storage.job_store import Job, JobStatus, JobStore
from transcription_worker.utils.errors import ConfigurationError, QueueError

logger = logging.getLogger(__name__)

DEFAULT_VISIBILITY_TIMEOUT_MS = 30 * 60 * 1000
MAX_RETRY_DELAY_SECONDS = 12 * 60 * 60

REASON_MALFORMED = "malformed_message"
REASON_RETRIES_EXHAUSTED = "retries_exhausted"
REASON_NON_RETRYABLE = "non_retryable_error"


@dataclass
class JobMessage:
    """Validated job reference deserialized from a queue message."""

    job_id: str
    enqueued_at: str = ""

    @classmethod
    def from_message_body(cls, body: Any) -> JobMessage:
        """Deserialize and validate a queue message body.

        Args:
            body: Raw message body dict from queue.

        Returns:
            Validated JobMessage.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        if not isinstance(body, dict):
            raise ValueError("Message body must be a JSON object")

        job_id = body.get("job_id")
        if not job_id or not isinstance(job_id, str):
            raise ValueError("Missing or invalid 'job_id' in message")

        enqueued_at = body.get("enqueued_at", "")
        if enqueued_at:
            try:
                datetime.fromisoformat(enqueued_at)
            except (TypeError, ValueError) as exc:
                raise ValueError(
                    f"Invalid 'enqueued_at' ISO 8601 format: '{enqueued_at}'"
                ) from exc

        return cls(job_id=job_id, enqueued_at=enqueued_at)


@dataclass
class QueueMessage:
    """A message received from a Cloudflare Queue."""

    message_id: str
    lease_id: str
    body: Any
    attempts: int = 1


def _decode_body(body: Any) -> Any:
    """CF returns the body as a JSON string; decode it when possible."""
    if isinstance(body, str):
        try:
            return json.loads(body)
        except ValueError:
            return body
    return body


def retry_delay_seconds(next_attempt_at: datetime | None, now: datetime) -> int:
    """Seconds until the job becomes eligible, clamped to the broker limit."""
    if next_attempt_at is None:
        return 0
    delay = math.ceil((next_attempt_at - now).total_seconds())
    return max(0, min(delay, MAX_RETRY_DELAY_SECONDS))


class QueueConsumer(JobConsumer):
    """Cloudflare Queues HTTP pull consumer.

    Configuration from environment variables:
        CF_QUEUE_API_URL, CF_QUEUE_ID, CF_DEAD_LETTER_QUEUE_ID,
        CF_API_TOKEN
    """

    mode = "queue"

    def __init__(
        self,
        store: JobStore,
        coordinator: JobCoordinator,
        queue_api_url: str | None = None,
        queue_id: str | None = None,
        dead_letter_queue_id: str | None = None,
        cf_api_token: str | None = None,
        poll_interval: float = 5.0,
        batch_size: int = 1,
        visibility_timeout_ms: int = DEFAULT_VISIBILITY_TIMEOUT_MS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(store, coordinator)
        self.queue_api_url = (
            queue_api_url or os.environ.get("CF_QUEUE_API_URL", "")
        ).rstrip("/")
        self.queue_id = queue_id or os.environ.get("CF_QUEUE_ID", "")
        self.dead_letter_queue_id = dead_letter_queue_id or os.environ.get(
            "CF_DEAD_LETTER_QUEUE_ID", ""
        )
        self.cf_api_token = cf_api_token or os.environ.get("CF_API_TOKEN", "")
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.visibility_timeout_ms = visibility_timeout_ms

        for setting, value in (
            ("CF_QUEUE_API_URL", self.queue_api_url),
            ("CF_QUEUE_ID", self.queue_id),
            ("CF_API_TOKEN", self.cf_api_token),
        ):
            if not value:
                raise ConfigurationError(f"{setting} is required", setting=setting)

        if not self.dead_letter_queue_id:
            logger.warning(
                "CF_DEAD_LETTER_QUEUE_ID not set; failed jobs will be acked "
                "without dead-lettering"
            )

        self._client = client or httpx.AsyncClient(timeout=30.0)

    def _headers(self) -> dict[str, str]:
        """Build authentication headers for Cloudflare API."""
        return {
            "Authorization": f"Bearer {self.cf_api_token}",
            "Content-Type": "application/json",
        }

    async def close(self) -> None:
        """Close the broker HTTP client."""
        await self._client.aclose()

    async def _post(
        self, queue_id: str, path: str, payload: dict[str, Any], operation: str
    ) -> httpx.Response:
        url = f"{self.queue_api_url}/queues/{queue_id}/{path}"
        try:
            response = await self._client.post(
                url, headers=self._headers(), json=payload
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise QueueError(
                f"Queue {operation} failed for {queue_id}: "
                f"HTTP {exc.response.status_code}",
                queue_id=queue_id,
                operation=operation,
            ) from exc
        except httpx.RequestError as exc:
            raise QueueError(
                f"Queue {operation} failed for {queue_id}: {exc}",
                queue_id=queue_id,
                operation=operation,
            ) from exc
        return response

    async def _pull_messages(self) -> list[QueueMessage]:
        """Pull a batch of messages from the job queue.

        Returns:
            List of QueueMessage objects. Empty list on error or no messages.
        """
        try:
            response = await self._post(
                self.queue_id,
                "messages/pull",
                {
                    "batch_size": self.batch_size,
                    "visibility_timeout_ms": self.visibility_timeout_ms,
                },
                operation="pull",
            )
            data = response.json()
        except (QueueError, ValueError) as exc:
            logger.error("Queue pull failed: %s", exc)
            return []

        messages_data = (data.get("result") or {}).get("messages") or []

        messages: list[QueueMessage] = []
        for msg in messages_data:
            try:
                messages.append(
                    QueueMessage(
                        message_id=msg["id"],
                        lease_id=msg["lease_id"],
                        body=_decode_body(msg.get("body")),
                        attempts=int(msg.get("attempts", 1)),
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed queue message structure: %s", exc)

        return messages

    async def _ack_message(self, message: QueueMessage) -> None:
        """Acknowledge a message so it is not delivered again."""
        try:
            await self._post(
                self.queue_id,
                "messages/ack",
                {"acks": [{"lease_id": message.lease_id}]},
                operation="ack",
            )
        except QueueError as exc:
            logger.error("Ack failed for message %s: %s", message.message_id, exc)

    async def _abandon_message(
        self, message: QueueMessage, delay_seconds: int = 0
    ) -> None:
        """Return a message to the queue for a later delivery."""
        retry: dict[str, Any] = {"lease_id": message.lease_id}
        if delay_seconds > 0:
            retry["delay_seconds"] = delay_seconds
        try:
            await self._post(
                self.queue_id,
                "messages/ack",
                {"retries": [retry]},
                operation="retry",
            )
        except QueueError as exc:
            logger.error(
                "Retry failed for message %s: %s", message.message_id, exc
            )

    async def _dead_letter_message(
        self,
        message: QueueMessage,
        reason: str,
        job_id: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Publish the message to the dead-letter queue, then ack it."""
        log_extra = {"job_id": job_id, "reason": reason}
        if self.dead_letter_queue_id:
            payload = {
                "body": {
                    "job_id": job_id,
                    "reason": reason,
                    "error_message": error_message,
                    "message_id": message.message_id,
                    "original_body": message.body,
                    "attempts": message.attempts,
                    "dead_lettered_at": datetime.now(UTC).isoformat(),
                },
                "content_type": "json",
            }
            try:
                await self._post(
                    self.dead_letter_queue_id,
                    "messages",
                    payload,
                    operation="dead_letter",
                )
                logger.warning(
                    "Message %s dead-lettered: %s",
                    message.message_id,
                    reason,
                    extra=log_extra,
                )
            except QueueError as exc:
                logger.error(
                    "Dead-letter publish failed for message %s: %s",
                    message.message_id,
                    exc,
                    extra=log_extra,
                )
        else:
            logger.error(
                "Dropping message %s without dead-letter queue: %s",
                message.message_id,
                reason,
                extra=log_extra,
            )
        await self._ack_message(message)

    async def process_message(self, message: QueueMessage) -> str:
        """Claim, run, and settle a single message.

        Returns:
            The disposition applied: "acked", "dropped", "retried",
            "dead_lettered", or "unacked".
        """
        try:
            job_message = JobMessage.from_message_body(message.body)
        except ValueError as exc:
            logger.warning("Invalid message %s: %s", message.message_id, exc)
            await self._dead_letter_message(
                message, REASON_MALFORMED, error_message=str(exc)
            )
            return "dead_lettered"

        job_id = job_message.job_id
        log_extra = {"job_id": job_id}

        try:
            job = await self.store.claim_by_id(job_id)
        except Exception:
            logger.error(
                "Failed to claim job %s", job_id, exc_info=True, extra=log_extra
            )
            # Lease expiry makes the message visible again.
            return "unacked"

        if job is None:
            logger.info(
                "Job %s is missing or already claimed; dropping message %s",
                job_id,
                message.message_id,
                extra=log_extra,
            )
            await self._ack_message(message)
            return "dropped"

        try:
            outcome = await self.coordinator.run(job)
        except Exception:
            logger.error(
                "Coordinator crashed for job %s", job_id, exc_info=True, extra=log_extra
            )
            await self._abandon_message(message)
            return "retried"

        if outcome.succeeded:
            await self._ack_message(message)
            return "acked"

        return await self._settle_failure(message, job, outcome)

    async def _settle_failure(
        self, message: QueueMessage, job: Job, outcome: JobOutcome
    ) -> str:
        try:
            current = await self.store.fetch(job.id)
        except Exception:
            logger.warning(
                "Could not re-fetch job %s after failure",
                job.id,
                exc_info=True,
                extra={"job_id": job.id},
            )
            current = None

        if current is not None:
            failed = current.status == JobStatus.FAILED
            exhausted = current.retries_exhausted
            next_attempt_at = current.next_attempt_at
        else:
            failed = outcome.status == "failed"
            exhausted = outcome.retry_count > job.max_retries
            next_attempt_at = outcome.next_attempt_at

        if failed:
            reason = REASON_RETRIES_EXHAUSTED if exhausted else REASON_NON_RETRYABLE
            await self._dead_letter_message(
                message, reason, job_id=job.id, error_message=outcome.error
            )
            return "dead_lettered"

        delay = retry_delay_seconds(next_attempt_at, datetime.now(UTC))
        await self._abandon_message(message, delay)
        return "retried"

    async def poll_once(self) -> int:
        """Execute a single pull cycle.

        Returns:
            Number of messages processed.
        """
        processed = 0
        for message in await self._pull_messages():
            await self.process_message(message)
            processed += 1
            if not self._running:
                break
        return processed

    async def run(self) -> None:
        """Start the pull loop. Runs until stopped."""
        self._running = not self._stop_event.is_set()
        logger.info("Queue consumer starting pull loop", extra={"worker_mode": self.mode})

        while self._running:
            try:
                count = await self.poll_once()
                if count > 0:
                    logger.info("Processed %d messages this cycle", count)
                    continue
            except Exception:
                logger.error("Unexpected error in pull cycle", exc_info=True)

            await self._sleep(self.poll_interval)

        logger.info("Queue consumer stopped", extra={"worker_mode": self.mode})
