"""Run records and event fan-out.

A DeploymentRun is the live record of one deploy or removal: its phase,
percent, strategy, outcome and ordered event history. Orchestrators write
to it; HTTP and WebSocket clients read from it. Operator prompts (the
deployment decision and the admin credential) are suspend points modelled
as futures on the run that an API call resolves.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from hvlab.logging_config import close_run_logger, open_run_logger
from hvlab.process import CancellationToken
from hvlab.schemas import (
    DeployPhase,
    DeploymentChoice,
    EventKind,
    PendingPrompt,
    PromptKind,
    RunEvent,
    RunKind,
    RunOutcome,
    RunStatus,
    Strategy,
)

if TYPE_CHECKING:
    from hvlab.reconcile import Reconciliation
    from hvlab.schemas import LabTopology

logger = logging.getLogger(__name__)


def format_elapsed(seconds: float) -> str:
    """Format a duration as '1h 02m 03s', or '4m 05s' under an hour."""
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"


class DeploymentRun:
    """Live state of one deploy or removal run."""

    def __init__(
        self,
        kind: RunKind,
        topology: LabTopology,
        run_id: str | None = None,
        log_file: Path | None = None,
    ):
        self.id = run_id or uuid.uuid4().hex[:12]
        self.kind = kind
        self.topology = topology
        self.phase = DeployPhase.PENDING
        self.percent = 0
        self.strategy: Strategy | None = None
        self.outcome: RunOutcome | None = None
        self.started_at = datetime.now(timezone.utc)
        self.finished_at: datetime | None = None
        self.cancel_token = CancellationToken()
        self.events: list[RunEvent] = []
        self.pending_prompt: PendingPrompt | None = None
        self.log_file = log_file

        self._subscribers: set[asyncio.Queue] = set()
        self._prompt_future: asyncio.Future | None = None
        self._done = asyncio.Event()
        self._run_logger = open_run_logger(self.id, log_file)

    @property
    def lab_name(self) -> str:
        return self.topology.name

    @property
    def is_finished(self) -> bool:
        return self.outcome is not None

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    # --- Event stream ---

    def _publish(self, event: RunEvent) -> RunEvent:
        event.seq = len(self.events)
        self.events.append(event)
        for queue in list(self._subscribers):
            queue.put_nowait(event)
        return event

    def subscribe(self) -> tuple[list[RunEvent], asyncio.Queue]:
        """Snapshot the history and register a queue for later events.

        The queue receives None once the terminal event has been published.
        """
        queue: asyncio.Queue = asyncio.Queue()
        history = list(self.events)
        if self.is_finished:
            queue.put_nowait(None)
        else:
            self._subscribers.add(queue)
        return history, queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def log(self, message: str, is_error: bool = False) -> None:
        """Emit an operator-facing log line and mirror it to the run log file."""
        self._publish(RunEvent(kind=EventKind.LOG, message=message, is_error=is_error))
        if is_error:
            self._run_logger.error(message)
        else:
            self._run_logger.info(message)
        logger.debug(f"[{self.id}] {message}")

    def progress(self, percent: int, message: str = "") -> None:
        """Record a progress milestone; percent is the latest known value."""
        percent = max(0, min(100, percent))
        self.percent = percent
        self._publish(RunEvent(kind=EventKind.PROGRESS, message=message, percent=percent))
        if message:
            self._run_logger.info(f"[{percent}%] {message}")

    def set_phase(self, phase: DeployPhase) -> None:
        if phase != self.phase:
            logger.debug(f"[{self.id}] phase {self.phase.value} -> {phase.value}")
            self.phase = phase

    # --- Operator prompts ---

    async def _await_prompt(self, prompt: PendingPrompt):
        if self.cancel_token.is_cancelled:
            return None

        self._prompt_future = asyncio.get_running_loop().create_future()
        self.pending_prompt = prompt
        self._publish(RunEvent(kind=EventKind.PROMPT, message=prompt.message, prompt=prompt))
        try:
            return await self._prompt_future
        finally:
            self._prompt_future = None
            self.pending_prompt = None

    async def request_decision(self, reconciliation: Reconciliation) -> DeploymentChoice:
        """Suspend until the operator picks a deployment strategy."""
        prompt = PendingPrompt(
            kind=PromptKind.DECISION,
            message=reconciliation.prompt_message(),
            choices=reconciliation.choices,
            existing=reconciliation.existing,
            missing=reconciliation.missing,
        )
        choice = await self._await_prompt(prompt)
        return choice if choice is not None else DeploymentChoice.CANCEL

    async def request_credential(self, lab_name: str) -> str | None:
        """Suspend until the operator enters or declines the admin password."""
        prompt = PendingPrompt(
            kind=PromptKind.CREDENTIAL,
            message=f"Enter the administrator password for lab '{lab_name}'",
        )
        return await self._await_prompt(prompt)

    def _answer(self, kind: PromptKind, value) -> bool:
        future = self._prompt_future
        if (
            future is None
            or future.done()
            or self.pending_prompt is None
            or self.pending_prompt.kind != kind
        ):
            return False
        future.set_result(value)
        return True

    def answer_decision(self, choice: DeploymentChoice) -> bool:
        """Resolve a pending decision prompt. Returns False if none is pending."""
        return self._answer(PromptKind.DECISION, choice)

    def answer_credential(self, password: str | None) -> bool:
        """Resolve a pending credential prompt. Blank or None declines."""
        return self._answer(PromptKind.CREDENTIAL, password or None)

    # --- Lifecycle ---

    def cancel(self, reason: str = "Cancelled by operator") -> None:
        """Request cancellation. Idempotent; a pending prompt is declined."""
        if self.is_finished:
            return
        self.cancel_token.cancel(reason)
        future = self._prompt_future
        if future is not None and not future.done():
            future.set_result(None)

    def finish(self, outcome: RunOutcome, message: str = "") -> RunEvent:
        """Publish the terminal record. Later calls are ignored."""
        if self.is_finished:
            return self.events[-1]

        self.outcome = outcome
        self.finished_at = datetime.now(timezone.utc)
        self.set_phase(DeployPhase.DONE)
        elapsed = self.elapsed_seconds
        text = message or outcome.value
        event = self._publish(
            RunEvent(
                kind=EventKind.OUTCOME,
                message=text,
                outcome=outcome,
                percent=self.percent,
                is_error=outcome == RunOutcome.FAILED,
                elapsed_seconds=elapsed,
            )
        )
        self._run_logger.info(f"{text} (elapsed: {format_elapsed(elapsed)})")
        close_run_logger(self._run_logger)

        for queue in list(self._subscribers):
            queue.put_nowait(None)
        self._subscribers.clear()
        self._done.set()
        logger.info(
            f"Run {self.id} ({self.kind.value} {self.lab_name}) finished: "
            f"{outcome.value} in {format_elapsed(elapsed)}"
        )
        return event

    async def wait(self) -> RunOutcome | None:
        await self._done.wait()
        return self.outcome

    def status(self) -> RunStatus:
        return RunStatus(
            run_id=self.id,
            kind=self.kind,
            lab_name=self.lab_name,
            phase=self.phase,
            percent=self.percent,
            strategy=self.strategy,
            outcome=self.outcome,
            started_at=self.started_at,
            finished_at=self.finished_at,
            elapsed_seconds=self.elapsed_seconds,
            pending_prompt=self.pending_prompt,
            log_file=str(self.log_file) if self.log_file else None,
        )


class RunRegistry:
    """In-memory index of runs; keeps every active run and recent finished ones."""

    def __init__(self, history_limit: int = 20):
        self.history_limit = history_limit
        self._runs: OrderedDict[str, DeploymentRun] = OrderedDict()

    def add(self, run: DeploymentRun) -> None:
        self._runs[run.id] = run
        self._prune()

    def get(self, run_id: str) -> DeploymentRun | None:
        return self._runs.get(run_id)

    def list(self) -> list[DeploymentRun]:
        return list(self._runs.values())

    def active(self) -> list[DeploymentRun]:
        return [r for r in self._runs.values() if not r.is_finished]

    def active_for(self, lab_name: str) -> DeploymentRun | None:
        key = lab_name.lower()
        for run in self._runs.values():
            if not run.is_finished and run.lab_name.lower() == key:
                return run
        return None

    def _prune(self) -> None:
        finished = [r.id for r in self._runs.values() if r.is_finished]
        excess = len(finished) - self.history_limit
        for run_id in finished[:max(0, excess)]:
            del self._runs[run_id]
