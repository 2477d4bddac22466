"""Polling controller: fetch, build, render until the trace settles.

Traces are written to the backend asynchronously, so one query may see
only part of a trace. After a triggering request the controller keeps
re-fetching until the deadline, rendering every time the record count
changes and the tree is complete. A historical lookup fetches once.

State machine:

    FETCHING --count changed--> BUILDING --complete--> render --> FETCHING
        |                          |                             (or exit)
        +--count same, recent--> sleep --> FETCHING
        |                          +--orphans, recent--> RESTART --> FETCHING
        +--deadline passed--> DEADLINE_EXIT
        +--fetch raised--> FATAL_ERROR (exception propagates)
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional, Protocol

from tracetree.errors import ErrorCode, LinkGenerationError, warn
from tracetree.search.es_fetch import RecordSource
from tracetree.trace.build_tree import BuildResult, build_forest
from tracetree.trace.record_model import Record, RecordId

DEFAULT_POLL_INTERVAL_SECONDS = 5.0


class PollState(str, Enum):
    """States of one polling run."""

    FETCHING = "fetching"
    BUILDING = "building"
    QUIESCENT_EXIT = "quiescent_exit"
    RESTART = "restart"
    DEADLINE_EXIT = "deadline_exit"
    FATAL_ERROR = "fatal_error"


class Renderer(Protocol):
    def render(self, result: BuildResult, links: Mapping[RecordId, str]) -> None:
        ...


class LinkGenerator(Protocol):
    def link_for(self, record_id: RecordId, record: Record) -> str:
        ...


@dataclass
class PollOutcome:
    """How a run ended and what it did on the way."""

    state: PollState
    fetches: int = 0
    renders: int = 0
    restarts: int = 0
    last_build: Optional[BuildResult] = None
    history: list[PollState] = field(default_factory=list)


@dataclass
class PollingController:
    """Owns the retry/quiescence state for one run.

    Attributes:
        source: Record source queried once per fetch cycle.
        renderer: Receives every completed build.
        link_generator: Optional deep-link collaborator for root transactions.
        poll_interval_seconds: Sleep between fetches that saw no new records.
        clock: Monotonic time source (seconds).
        sleep: Blocking sleep; injected so tests never wait.
    """

    source: RecordSource
    renderer: Renderer
    link_generator: Optional[LinkGenerator] = None
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], None] = time.sleep
    last_count: int = field(default=0, init=False)
    outcome: Optional[PollOutcome] = field(default=None, init=False)

    def run(
        self,
        trace_id: str,
        recent_request: bool,
        poll_duration_seconds: float = 0.0,
    ) -> PollOutcome:
        """Poll ``trace_id`` until quiescence, deadline or error.

        Args:
            trace_id: Trace to rebuild.
            recent_request: True when the trace was just triggered and is
                still being written; False for a one-shot lookup.
            poll_duration_seconds: Polling window for recent requests,
                measured from this call. Never extended.

        Returns:
            PollOutcome with the terminal state.

        Raises:
            SearchQueryError, RecordDecodeError: Fetch failures are fatal
                and are re-raised after the outcome is marked FATAL_ERROR.
        """
        self.last_count = 0
        deadline = self.clock() + poll_duration_seconds if recent_request else None
        outcome = PollOutcome(state=PollState.FETCHING)
        self.outcome = outcome

        while True:
            records = self._fetch_changed(trace_id, recent_request, deadline, outcome)
            if records is None:
                return self._finish(outcome, PollState.DEADLINE_EXIT)

            outcome.history.append(PollState.BUILDING)
            result = build_forest(trace_id, records)
            if not result.all_resolved and recent_request:
                # A child arrived before its parent; fetch again.
                outcome.restarts += 1
                outcome.history.append(PollState.RESTART)
                continue

            self._render(result, records)
            outcome.renders += 1
            outcome.last_build = result

            if not recent_request:
                return self._finish(outcome, PollState.QUIESCENT_EXIT)
            if self._deadline_passed(deadline):
                return self._finish(outcome, PollState.DEADLINE_EXIT)

    def _fetch_changed(
        self,
        trace_id: str,
        recent_request: bool,
        deadline: Optional[float],
        outcome: PollOutcome,
    ) -> Optional[dict[RecordId, Record]]:
        """Fetch until the record count changes; None once the deadline passes."""
        while True:
            if recent_request and self._deadline_passed(deadline):
                return None

            outcome.history.append(PollState.FETCHING)
            try:
                records = self.source.fetch(trace_id)
            except Exception:
                outcome.state = PollState.FATAL_ERROR
                outcome.history.append(PollState.FATAL_ERROR)
                raise
            outcome.fetches += 1

            if len(records) != self.last_count:
                self.last_count = len(records)
                return records
            if not recent_request:
                # A single fetch is authoritative for historical traces.
                return records
            self.sleep(self.poll_interval_seconds)

    def _render(self, result: BuildResult, records: Mapping[RecordId, Record]) -> None:
        links: dict[RecordId, str] = {}
        if self.link_generator is not None:
            for record_id in result.root_transactions:
                try:
                    links[record_id] = self.link_generator.link_for(record_id, records[record_id])
                except LinkGenerationError as e:
                    warn(ErrorCode.E103, f"{record_id.span_id}: {e}")
        self.renderer.render(result, links)

    def _deadline_passed(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self.clock() >= deadline

    @staticmethod
    def _finish(outcome: PollOutcome, state: PollState) -> PollOutcome:
        outcome.state = state
        outcome.history.append(state)
        return outcome
