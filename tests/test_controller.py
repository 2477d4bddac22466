"""Tests for the polling controller state machine."""
from __future__ import annotations

from typing import Mapping
from unittest.mock import MagicMock

import pytest

from conftest import span, transaction
from tracetree.errors import LinkGenerationError, SearchQueryError
from tracetree.links.kibana import KibanaLinkGenerator
from tracetree.poll.controller import PollingController, PollState
from tracetree.trace.build_tree import BuildResult
from tracetree.trace.record_model import Record, RecordId

T = "trace-1"


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedSource:
    """Returns the scripted record sets in order, repeating the last one."""

    def __init__(self, *responses: dict[RecordId, Record]) -> None:
        self.responses = list(responses)
        self.calls = 0

    def fetch(self, trace_id: str) -> dict[RecordId, Record]:
        idx = min(self.calls, len(self.responses) - 1)
        self.calls += 1
        return self.responses[idx]


class RecordingRenderer:
    def __init__(self) -> None:
        self.renders: list[tuple[BuildResult, dict[RecordId, str]]] = []

    def render(self, result: BuildResult, links: Mapping[RecordId, str]) -> None:
        self.renders.append((result, dict(links)))


def _controller(source, clock: FakeClock, **kwargs) -> tuple[PollingController, RecordingRenderer]:
    renderer = RecordingRenderer()
    controller = PollingController(
        source=source,
        renderer=renderer,
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )
    return controller, renderer


INCOMPLETE = dict([transaction(T, "t1", "", "op"), span(T, "s2", "s1", "late-child")])
COMPLETE = dict(
    [
        transaction(T, "t1", "", "op"),
        span(T, "s1", "t1", "parent"),
        span(T, "s2", "s1", "late-child"),
    ]
)


class TestRecentRequest:
    """Polling after a freshly triggered request."""

    def test_restart_on_unresolved_parent_then_render(self) -> None:
        """Cycle 1 has an orphan (no render); cycle 2 is complete and renders."""
        clock = FakeClock()
        source = ScriptedSource(INCOMPLETE, COMPLETE)
        controller, renderer = _controller(source, clock)

        outcome = controller.run(T, recent_request=True, poll_duration_seconds=30)

        assert outcome.restarts == 1
        assert outcome.renders == 1
        assert len(renderer.renders) == 1
        rendered, _ = renderer.renders[0]
        assert rendered.all_resolved
        assert len(rendered.forest) == 4
        history = outcome.history
        assert history[:5] == [
            PollState.FETCHING,
            PollState.BUILDING,
            PollState.RESTART,
            PollState.FETCHING,
            PollState.BUILDING,
        ]
        # Kept polling after the render until the deadline.
        assert outcome.state == PollState.DEADLINE_EXIT
        assert clock.now >= 1030.0

    def test_restart_does_not_wait(self) -> None:
        clock = FakeClock()
        source = ScriptedSource(INCOMPLETE, COMPLETE)
        controller, _ = _controller(source, clock)

        controller.run(T, recent_request=True, poll_duration_seconds=30)

        # Second fetch happened with no sleep in between.
        assert source.calls >= 2
        assert clock.sleeps[0] == 5.0
        assert controller.outcome is not None
        assert controller.outcome.history.index(PollState.RESTART) < 3

    def test_unchanged_count_waits_until_deadline(self) -> None:
        clock = FakeClock()
        source = ScriptedSource(COMPLETE)
        controller, renderer = _controller(source, clock)

        outcome = controller.run(T, recent_request=True, poll_duration_seconds=12)

        assert len(renderer.renders) == 1
        assert clock.sleeps == [5.0, 5.0, 5.0]
        assert source.calls == 4
        assert outcome.state == PollState.DEADLINE_EXIT

    def test_growth_renders_again(self) -> None:
        clock = FakeClock()
        first = dict([transaction(T, "t1", "", "op")])
        source = ScriptedSource(first, first, COMPLETE)
        controller, renderer = _controller(source, clock)

        outcome = controller.run(T, recent_request=True, poll_duration_seconds=20)

        assert outcome.renders == 2
        assert len(renderer.renders[0][0].forest) == 2
        assert len(renderer.renders[1][0].forest) == 4

    def test_deadline_already_passed_skips_fetch(self) -> None:
        clock = FakeClock()
        source = ScriptedSource(COMPLETE)
        controller, renderer = _controller(source, clock)

        outcome = controller.run(T, recent_request=True, poll_duration_seconds=0)

        assert source.calls == 0
        assert renderer.renders == []
        assert outcome.state == PollState.DEADLINE_EXIT

    def test_deadline_is_not_extended_by_activity(self) -> None:
        clock = FakeClock()
        sets = []
        for i in range(1, 20):
            sets.append(dict([transaction(T, f"t{j}", "", "op") for j in range(i)]))
        source = ScriptedSource(*sets)
        controller, _ = _controller(source, clock)

        # Every fetch grows the trace; the controller must still stop.
        def slow_fetch(trace_id: str):
            clock.now += 4
            return ScriptedSource.fetch(source, trace_id)

        source.fetch = slow_fetch  # type: ignore[method-assign]
        outcome = controller.run(T, recent_request=True, poll_duration_seconds=10)

        assert outcome.state == PollState.DEADLINE_EXIT
        assert outcome.fetches == 3

    def test_empty_trace_never_renders(self) -> None:
        clock = FakeClock()
        source = ScriptedSource({})
        controller, renderer = _controller(source, clock)

        outcome = controller.run(T, recent_request=True, poll_duration_seconds=10)

        assert renderer.renders == []
        assert outcome.state == PollState.DEADLINE_EXIT


class TestHistoricalLookup:
    """One-shot lookup of an existing trace."""

    def test_orphans_rendered_in_single_cycle(self) -> None:
        clock = FakeClock()
        source = ScriptedSource(INCOMPLETE)
        controller, renderer = _controller(source, clock)

        outcome = controller.run(T, recent_request=False)

        assert source.calls == 1
        assert outcome.state == PollState.QUIESCENT_EXIT
        assert len(renderer.renders) == 1
        rendered, _ = renderer.renders[0]
        assert rendered.orphan_ids() == {RecordId(T, "s2")}
        assert clock.sleeps == []

    def test_empty_result_still_renders(self) -> None:
        """Equal count (0 == 0) does not wait for a historical lookup."""
        clock = FakeClock()
        source = ScriptedSource({})
        controller, renderer = _controller(source, clock)

        outcome = controller.run(T, recent_request=False)

        assert outcome.state == PollState.QUIESCENT_EXIT
        assert len(renderer.renders) == 1
        assert clock.sleeps == []

    def test_quiescence_state_reset_between_runs(self) -> None:
        clock = FakeClock()
        source = ScriptedSource(COMPLETE)
        controller, renderer = _controller(source, clock)

        controller.run(T, recent_request=False)
        controller.run(T, recent_request=True, poll_duration_seconds=3)

        # The recent run renders again: its count started from zero.
        assert len(renderer.renders) == 2


class TestFailures:
    """Fatal and non-fatal failures."""

    def test_fetch_error_is_fatal(self) -> None:
        clock = FakeClock()
        source = MagicMock()
        source.fetch.side_effect = SearchQueryError("boom")
        controller, renderer = _controller(source, clock)

        with pytest.raises(SearchQueryError):
            controller.run(T, recent_request=True, poll_duration_seconds=30)

        assert source.fetch.call_count == 1
        assert renderer.renders == []
        assert controller.outcome is not None
        assert controller.outcome.state == PollState.FATAL_ERROR

    def test_link_failure_isolated_per_root(self, capsys: pytest.CaptureFixture[str]) -> None:
        clock = FakeClock()
        records = dict(
            [
                transaction(T, "t1", "", "first"),
                transaction(T, "t2", "", "second"),
            ]
        )
        source = ScriptedSource(records)
        links = MagicMock()

        def link_for(record_id: RecordId, record: Record) -> str:
            if record_id.span_id == "t1":
                raise LinkGenerationError("kibana down")
            return f"http://kibana/goto/{record_id.span_id}"

        links.link_for.side_effect = link_for
        controller, renderer = _controller(source, clock, link_generator=links)

        outcome = controller.run(T, recent_request=False)

        assert outcome.state == PollState.QUIESCENT_EXIT
        _, rendered_links = renderer.renders[0]
        assert rendered_links == {RecordId(T, "t2"): "http://kibana/goto/t2"}
        assert "TT-E103" in capsys.readouterr().err

    def test_links_only_for_root_transactions(self) -> None:
        clock = FakeClock()
        source = ScriptedSource(COMPLETE)
        links = MagicMock()
        links.link_for.return_value = "http://kibana/goto/x"
        controller, _ = _controller(source, clock, link_generator=links)

        controller.run(T, recent_request=False)

        links.link_for.assert_called_once_with(RecordId(T, "t1"), COMPLETE[RecordId(T, "t1")])

    def test_malformed_kibana_url_still_renders(self, capsys: pytest.CaptureFixture[str]) -> None:
        clock = FakeClock()
        records = dict(
            [
                transaction(T, "t1", "", "first"),
                transaction(T, "t2", "", "second"),
            ]
        )
        source = ScriptedSource(records)
        controller, renderer = _controller(
            source, clock, link_generator=KibanaLinkGenerator("http://kibana:notaport")
        )

        outcome = controller.run(T, recent_request=False)

        assert outcome.state == PollState.QUIESCENT_EXIT
        assert len(renderer.renders) == 1
        assert renderer.renders[0][1] == {}
        assert capsys.readouterr().err.count("TT-E103") == 2
