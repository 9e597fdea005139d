"""Signed, best-effort progress webhooks."""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Mapping, Sequence

import httpx

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
# Extra time a shutdown drain allows past the delivery timeout.
DRAIN_GRACE = 1.0
SIGNATURE_FIELD = "signature"


def _utc_timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Point-in-time projection of the run sent to the webhook."""

    project_id: str
    status: str
    current_task: str
    completed_tasks: tuple[str, ...]
    files_changed: tuple[str, ...]
    timestamp: str
    build_status: str | None = None
    error: str | None = None

    def payload(self) -> dict[str, Any]:
        """Return the unsigned payload in its fixed field order.

        Optional fields that are unset are omitted entirely.
        """

        payload: dict[str, Any] = {
            "projectId": self.project_id,
            "status": self.status,
            "currentTask": self.current_task,
            "completedTasks": list(self.completed_tasks),
            "filesChanged": list(self.files_changed),
        }
        if self.build_status is not None:
            payload["buildStatus"] = self.build_status
        if self.error is not None:
            payload["error"] = self.error
        payload["timestamp"] = self.timestamp
        return payload


def serialize_payload(payload: Mapping[str, Any]) -> bytes:
    """Serialize compactly, keeping the mapping's key order."""

    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(payload: Mapping[str, Any], secret: str) -> str:
    """Hex HMAC-SHA256 of the serialized payload."""

    return hmac.new(secret.encode("utf-8"), serialize_payload(payload), hashlib.sha256).hexdigest()


def build_envelope(payload: Mapping[str, Any], secret: str) -> dict[str, Any]:
    envelope = dict(payload)
    envelope[SIGNATURE_FIELD] = sign_payload(payload, secret)
    return envelope


def verify_signature(envelope: Mapping[str, Any], secret: str) -> bool:
    """Check a received envelope. Returns True if the signature matches."""

    stored = envelope.get(SIGNATURE_FIELD)
    if not isinstance(stored, str) or not stored:
        return False
    payload = {key: value for key, value in envelope.items() if key != SIGNATURE_FIELD}
    return hmac.compare_digest(stored, sign_payload(payload, secret))


@dataclass
class BestEffortDispatcher:
    """Runs detached coroutines whose outcome is only ever logged.

    Callers never await what they dispatch. The dispatcher keeps strong
    references until each task finishes so none is garbage collected
    mid-flight, and ``drain`` lets a shutting-down process give pending
    work a bounded chance to finish.
    """

    _pending: set[asyncio.Task] = field(default_factory=set)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop; dropped %s", name)
            return None
        task = loop.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Background dispatch %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background dispatch %s failed: %r", task.get_name(), exc)

    async def drain(self, timeout: float) -> None:
        if not self._pending:
            return
        pending = set(self._pending)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)


class SignedNotifier:
    """Builds signed progress events and delivers them fire-and-forget."""

    def __init__(
        self,
        webhook_url: str,
        secret: str,
        project_id: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], str] | None = None,
        dispatcher: BestEffortDispatcher | None = None,
    ) -> None:
        if not webhook_url or not webhook_url.strip():
            raise ConfigurationError("Webhook URL is required")
        if not secret:
            raise ConfigurationError("Webhook signing secret is required")
        self.webhook_url = webhook_url
        self.project_id = project_id
        self.timeout = timeout
        self._secret = secret
        self._transport = transport
        self._clock = clock or _utc_timestamp
        self.dispatcher = dispatcher or BestEffortDispatcher()

    def build_event(
        self,
        status: str,
        current_task: str = "",
        completed_tasks: Sequence[str] = (),
        files_changed: Sequence[str] = (),
        build_status: str | None = None,
        error: str | None = None,
    ) -> ProgressEvent:
        return ProgressEvent(
            project_id=self.project_id,
            status=status,
            current_task=current_task,
            completed_tasks=tuple(completed_tasks),
            files_changed=tuple(files_changed),
            timestamp=self._clock(),
            build_status=build_status,
            error=error,
        )

    def notify(
        self,
        status: str,
        current_task: str = "",
        completed_tasks: Sequence[str] = (),
        files_changed: Sequence[str] = (),
        build_status: str | None = None,
        error: str | None = None,
    ) -> None:
        """Schedule delivery of one progress event and return immediately.

        Never raises: a failure to build or deliver the event is logged.
        """

        try:
            event = self.build_event(
                status, current_task, completed_tasks, files_changed, build_status, error
            )
            envelope = build_envelope(event.payload(), self._secret)
        except Exception:
            logger.exception("Could not build progress event (status=%s)", status)
            return

        logger.info(
            "Sending progress update",
            extra={
                "status": status,
                "current_task": _preview(current_task, 100),
                "completed_tasks_count": len(event.completed_tasks),
                "files_changed_count": len(event.files_changed),
                "build_status": build_status or "N/A",
                "error_preview": _preview(error, 200) if error else "N/A",
                "timestamp": event.timestamp,
            },
        )
        self.dispatcher.dispatch(self._deliver(envelope), name=f"progress:{status}")

    async def drain(self) -> None:
        """Give in-flight deliveries up to one timeout to finish."""

        await self.dispatcher.drain(self.timeout + DRAIN_GRACE)

    async def _deliver(self, envelope: Mapping[str, Any]) -> bool:
        body = serialize_payload(envelope)
        status = envelope.get("status")
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await asyncio.wait_for(
                    client.post(
                        self.webhook_url,
                        content=body,
                        headers={"Content-Type": "application/json"},
                    ),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError:
            logger.warning(
                "Webhook update timed out after %.1fs (non-fatal, continuing)",
                self.timeout,
                extra={"status": status},
            )
            return False
        except httpx.HTTPError as exc:
            logger.warning(
                "Webhook update failed (non-fatal, continuing): %s: %s",
                type(exc).__name__,
                exc,
                extra={"status": status, "webhook_url": self.webhook_url[:50]},
            )
            return False

        if not response.is_success:
            logger.error(
                "Webhook returned error %s: %s",
                response.status_code,
                response.text[:200],
            )
            return False
        logger.info("Progress update sent (status: %s)", response.status_code)
        return True


def _preview(text: str | None, limit: int) -> str:
    if not text:
        return ""
    return text[:limit] + ("..." if len(text) > limit else "")


__all__ = [
    "BestEffortDispatcher",
    "ProgressEvent",
    "SignedNotifier",
    "build_envelope",
    "serialize_payload",
    "sign_payload",
    "verify_signature",
]
