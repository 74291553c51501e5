"""Run completion callback delivery with retry logic.

A deploy or removal request may carry a callback URL. When the run ends the
agent POSTs its terminal record there, retrying with increasing delays, and
keeps undeliverable records in an in-memory dead letter list for inspection.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from hvlab.runs import DeploymentRun

logger = logging.getLogger(__name__)

# Retry configuration
DEFAULT_RETRY_DELAYS = [10, 30, 60]  # Seconds between retries
DEAD_LETTER_TTL = 86400  # 24 hours
MAX_DEAD_LETTERS = 100


class CallbackDeliveryError(Exception):
    """Non-2xx response from the callback endpoint."""


@dataclass
class CallbackPayload:
    """Terminal record of a run."""

    run_id: str
    kind: str  # deploy, remove
    lab_name: str
    outcome: str
    message: str = ""
    strategy: str | None = None
    log_file: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    elapsed_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "kind": self.kind,
            "lab_name": self.lab_name,
            "outcome": self.outcome,
            "message": self.message,
            "strategy": self.strategy,
            "log_file": self.log_file,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": self.elapsed_seconds,
        }

    @classmethod
    def from_run(cls, run: DeploymentRun) -> CallbackPayload:
        message = run.events[-1].message if run.events else ""
        return cls(
            run_id=run.id,
            kind=run.kind.value,
            lab_name=run.lab_name,
            outcome=run.outcome.value if run.outcome else "unknown",
            message=message,
            strategy=run.strategy.value if run.strategy else None,
            log_file=str(run.log_file) if run.log_file else None,
            started_at=run.started_at,
            completed_at=run.finished_at,
            elapsed_seconds=run.elapsed_seconds,
        )


@dataclass
class DeadLetter:
    """A callback that could not be delivered."""

    callback_url: str
    payload: CallbackPayload
    attempts: int
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# In-memory dead letter queue
_dead_letters: list[DeadLetter] = []


async def deliver_callback(
    callback_url: str,
    payload: CallbackPayload,
    retry_delays: list[int] | None = None,
) -> bool:
    """Deliver a callback with retry logic.

    Args:
        callback_url: URL to POST the record to
        payload: Terminal run record
        retry_delays: Delays between attempts (seconds)

    Returns:
        True if the callback was delivered, False if it went to dead letter
    """
    if retry_delays is None:
        retry_delays = DEFAULT_RETRY_DELAYS

    last_error = None

    for attempt in range(len(retry_delays) + 1):
        try:
            await _try_deliver(callback_url, payload)
            logger.info(f"Callback delivered for run {payload.run_id}")
            return True
        except (httpx.HTTPError, CallbackDeliveryError) as e:
            last_error = str(e)
            logger.warning(
                f"Callback delivery failed for run {payload.run_id} "
                f"(attempt {attempt + 1}): {e}"
            )

        # Wait before retry (unless this was the last attempt)
        if attempt < len(retry_delays):
            delay = retry_delays[attempt]
            logger.info(f"Retrying callback for run {payload.run_id} in {delay}s...")
            await asyncio.sleep(delay)

    logger.error(
        f"Callback delivery failed after {len(retry_delays) + 1} attempts "
        f"for run {payload.run_id}. Keeping it in the dead letter queue."
    )
    _dead_letters.append(
        DeadLetter(
            callback_url=callback_url,
            payload=payload,
            attempts=len(retry_delays) + 1,
            error=last_error,
        )
    )
    _prune_dead_letters()
    return False


async def _try_deliver(callback_url: str, payload: CallbackPayload) -> None:
    """POST the payload once.

    Raises:
        httpx.HTTPError: On network errors
        CallbackDeliveryError: On a non-2xx response
    """
    async with httpx.AsyncClient() as client:
        response = await client.post(callback_url, json=payload.to_dict(), timeout=30.0)

    if not 200 <= response.status_code < 300:
        raise CallbackDeliveryError(f"HTTP {response.status_code}: {response.text[:200]}")


def _prune_dead_letters() -> None:
    """Drop expired entries and cap the queue length."""
    global _dead_letters
    now = datetime.now(timezone.utc)
    _dead_letters = [
        dl for dl in _dead_letters
        if (now - dl.created_at).total_seconds() < DEAD_LETTER_TTL
    ][-MAX_DEAD_LETTERS:]


def get_dead_letters() -> list[dict]:
    """Current dead letter queue contents, for debugging."""
    return [
        {
            "run_id": dl.payload.run_id,
            "callback_url": dl.callback_url,
            "outcome": dl.payload.outcome,
            "error": dl.error,
            "created_at": dl.created_at.isoformat(),
            "attempts": dl.attempts,
        }
        for dl in _dead_letters
    ]


def clear_dead_letters() -> None:
    _dead_letters.clear()


async def notify_completion(run: DeploymentRun, callback_url: str | None) -> bool | None:
    """Deliver the run's terminal record if a callback URL was given."""
    if not callback_url:
        return None
    return await deliver_callback(callback_url, CallbackPayload.from_run(run))
