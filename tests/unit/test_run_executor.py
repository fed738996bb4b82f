from __future__ import annotations

import asyncio

import pytest

from profilehub.services.domains.activity.application import ActivityLevel, ActivityLog
from profilehub.services.domains.collectors.errors import (
    CandidateValidationError,
    ControlInterrupt,
    PersistenceError,
    SourceFetchError,
    TransientSourceError,
)
from profilehub.services.domains.collectors.executor import RunExecutor
from profilehub.services.domains.collectors.types import CollectorTarget
from profilehub.services.domains.merge.types import MergeOutcome, ResearcherUpsertResult
from profilehub.services.domains.runs.types import RunProgress
from tests.unit.helpers import make_targets


def _executor(**overrides) -> RunExecutor:
    values = {
        "collector": "bdtd",
        "inter_target_delay_seconds": 0,
        "fetch_timeout_seconds": 5.0,
        "progress_interval": 1,
        "max_error_messages": 10,
    }
    values.update(overrides)
    return RunExecutor(**values)


def _fetch_from(results: dict):
    fetched: list[str] = []

    async def fetch(target: CollectorTarget):
        fetched.append(target.key)
        result = results.get(target.key, [])
        if isinstance(result, BaseException):
            raise result
        return result

    return fetch, fetched


async def _merge(candidate: str) -> MergeOutcome:
    if candidate == "invalid":
        raise CandidateValidationError("missing name")
    if candidate == "storage":
        raise PersistenceError("disk full")
    if candidate == "boom":
        raise RuntimeError("unexpected")
    return MergeOutcome(
        researcher=ResearcherUpsertResult(id=1, created=candidate == "new", updated=False),
    )


async def _always_running() -> None:
    return None


class _ControlState:
    def __init__(self) -> None:
        self.status = "running"
        self.calls = 0

    async def checkpoint(self) -> None:
        self.calls += 1
        if self.status != "running":
            raise ControlInterrupt(self.status)


@pytest.mark.asyncio
async def test_target_failures_do_not_abort_remaining_targets() -> None:
    fetch, fetched = _fetch_from(
        {
            "target:1": ["new", "dup"],
            "target:2": TransientSourceError("HTTP 503"),
            "target:3": ["new"],
            "target:4": SourceFetchError("Response has no 'records' list."),
        }
    )

    progress = await _executor().execute(
        targets=make_targets(4),
        fetch=fetch,
        merge=_merge,
        checkpoint=_always_running,
    )

    assert fetched == ["target:1", "target:2", "target:3", "target:4"]
    assert progress.created_count == 2
    assert progress.skipped_count == 1
    assert progress.errored_count == 2
    assert progress.targets_processed == 4
    assert progress.interrupted_reason is None
    assert progress.error_messages[0] == "Target 2: source unavailable (HTTP 503)"
    assert progress.error_messages[1] == "Target 4: Response has no 'records' list."


@pytest.mark.asyncio
async def test_stop_before_target_processes_no_further_targets() -> None:
    control = _ControlState()
    fetch, fetched = _fetch_from({f"target:{index}": ["new", "dup"] for index in range(1, 5)})
    snapshots: list[tuple[int, int, int]] = []

    async def on_progress(progress: RunProgress) -> None:
        snapshots.append((progress.created_count, progress.skipped_count, progress.errored_count))
        if progress.targets_processed == 2:
            control.status = "stopped"

    progress = await _executor().execute(
        targets=make_targets(4),
        fetch=fetch,
        merge=_merge,
        checkpoint=control.checkpoint,
        on_progress=on_progress,
    )

    assert fetched == ["target:1", "target:2"]
    assert progress.targets_processed == 2
    assert (progress.created_count, progress.skipped_count, progress.errored_count) == snapshots[-1]
    assert progress.interrupted_reason == "stopped"


@pytest.mark.asyncio
async def test_pause_between_candidates_keeps_partial_counts() -> None:
    fetch, _fetched = _fetch_from({"target:1": ["new", "new", "new"], "target:2": ["new"]})
    calls = 0

    async def checkpoint() -> None:
        nonlocal calls
        calls += 1
        # Call 1 is the target checkpoint, calls 2+ precede each candidate.
        if calls == 3:
            raise ControlInterrupt("paused")

    progress = await _executor().execute(
        targets=make_targets(2),
        fetch=fetch,
        merge=_merge,
        checkpoint=checkpoint,
    )

    assert progress.created_count == 1
    assert progress.targets_processed == 0
    assert progress.interrupted_reason == "paused"


@pytest.mark.asyncio
async def test_candidate_failures_are_isolated() -> None:
    fetch, _fetched = _fetch_from({"target:1": ["invalid", "new", "storage", "boom", "dup"]})

    progress = await _executor().execute(
        targets=make_targets(1),
        fetch=fetch,
        merge=_merge,
        checkpoint=_always_running,
    )

    assert progress.created_count == 1
    assert progress.skipped_count == 1
    assert progress.errored_count == 3
    assert progress.targets_processed == 1
    assert progress.error_messages == [
        "Target 1: invalid candidate (missing name)",
        "Target 1: storage failed (disk full)",
        "Target 1: unexpected merge error (RuntimeError: unexpected)",
    ]


@pytest.mark.asyncio
async def test_fetch_timeout_counts_as_target_error() -> None:
    async def fetch(target: CollectorTarget):
        if target.key == "target:1":
            await asyncio.sleep(10)
        return ["new"]

    progress = await _executor(fetch_timeout_seconds=0.05).execute(
        targets=make_targets(2),
        fetch=fetch,
        merge=_merge,
        checkpoint=_always_running,
    )

    assert progress.errored_count == 1
    assert "timed out" in progress.error_messages[0]
    assert progress.created_count == 1
    assert progress.targets_processed == 2


@pytest.mark.asyncio
async def test_delay_is_applied_between_targets_only() -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    fetch, _fetched = _fetch_from({})
    await _executor(inter_target_delay_seconds=2.5, sleep=fake_sleep).execute(
        targets=make_targets(3),
        fetch=fetch,
        merge=_merge,
        checkpoint=_always_running,
    )

    assert delays == [2.5, 2.5]


@pytest.mark.asyncio
async def test_error_messages_are_bounded_but_errors_are_counted() -> None:
    fetch, _fetched = _fetch_from(
        {f"target:{index}": SourceFetchError(f"HTTP 40{index}") for index in range(1, 6)}
    )

    progress = await _executor(max_error_messages=2).execute(
        targets=make_targets(5),
        fetch=fetch,
        merge=_merge,
        checkpoint=_always_running,
    )

    assert progress.errored_count == 5
    assert progress.error_messages == ["Target 1: HTTP 401", "Target 2: HTTP 402"]


@pytest.mark.asyncio
async def test_progress_callback_respects_interval() -> None:
    fetch, _fetched = _fetch_from({})
    reported: list[int] = []

    async def on_progress(progress: RunProgress) -> None:
        reported.append(progress.targets_processed)

    await _executor(progress_interval=2).execute(
        targets=make_targets(5),
        fetch=fetch,
        merge=_merge,
        checkpoint=_always_running,
        on_progress=on_progress,
    )

    assert reported == [2, 4]


@pytest.mark.asyncio
async def test_interrupt_is_reported_to_activity_log() -> None:
    activity_log = ActivityLog()
    control = _ControlState()
    control.status = "paused"
    fetch, fetched = _fetch_from({"target:1": ["new"]})

    progress = await _executor(activity_log=activity_log).execute(
        targets=make_targets(3),
        fetch=fetch,
        merge=_merge,
        checkpoint=control.checkpoint,
    )

    assert fetched == []
    assert progress.targets_processed == 0
    entries = activity_log.query("bdtd")
    assert entries[0].level == ActivityLevel.WARNING
    assert "paused" in entries[0].message
