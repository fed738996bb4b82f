from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging

from profilehub.logging_utils import structured_log
from profilehub.services.domains.activity.application import ActivityLevel, ActivityLog
from profilehub.services.domains.collectors.errors import (
    CandidateValidationError,
    ControlInterrupt,
    PersistenceError,
    SourceFetchError,
    TransientSourceError,
)
from profilehub.services.domains.collectors.types import (
    CheckpointFunction,
    CollectorTarget,
    FetchFunction,
    MergeFunction,
    ProgressCallback,
)
from profilehub.services.domains.runs.types import RunProgress

logger = logging.getLogger(__name__)


class RunExecutor:
    """Drives one collector run over its targets, strictly in sequence.

    Per-target and per-candidate failures become counters and error messages;
    a ``ControlInterrupt`` raised by ``checkpoint`` ends the loop early and
    leaves the partial counters in place.
    """

    def __init__(
        self,
        *,
        collector: str,
        inter_target_delay_seconds: float,
        fetch_timeout_seconds: float,
        progress_interval: int,
        max_error_messages: int,
        activity_log: ActivityLog | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._collector = collector
        self._inter_target_delay_seconds = max(0.0, float(inter_target_delay_seconds))
        self._fetch_timeout_seconds = max(0.001, float(fetch_timeout_seconds))
        self._progress_interval = max(1, int(progress_interval))
        self._max_error_messages = max(0, int(max_error_messages))
        self._activity_log = activity_log
        self._sleep = sleep

    def _activity(self, level: ActivityLevel, message: str) -> None:
        if self._activity_log is not None:
            self._activity_log.append(self._collector, level, message)

    def _record_error(self, progress: RunProgress, message: str) -> None:
        progress.errored_count += 1
        if len(progress.error_messages) < self._max_error_messages:
            progress.error_messages.append(message)
        self._activity(ActivityLevel.ERROR, message)

    async def _fetch(
        self,
        fetch: FetchFunction,
        target: CollectorTarget,
        progress: RunProgress,
    ) -> Sequence | None:
        try:
            return await asyncio.wait_for(fetch(target), timeout=self._fetch_timeout_seconds)
        except TimeoutError:
            message = f"{target.label}: fetch timed out after {self._fetch_timeout_seconds:g}s"
        except TransientSourceError as exc:
            message = f"{target.label}: source unavailable ({exc})"
        except SourceFetchError as exc:
            message = f"{target.label}: {exc}"
        except ControlInterrupt:
            raise
        except Exception as exc:
            logger.exception(
                "collector.fetch_failed",
                extra={"event": "collector.fetch_failed", "target": target.key},
            )
            message = f"{target.label}: unexpected fetch error ({exc.__class__.__name__}: {exc})"
        structured_log(
            logger,
            "warning",
            "collector.target_failed",
            target=target.key,
            detail=message,
        )
        self._record_error(progress, message)
        return None

    async def _merge_candidates(
        self,
        candidates: Sequence,
        *,
        target: CollectorTarget,
        merge: MergeFunction,
        checkpoint: CheckpointFunction,
        progress: RunProgress,
    ) -> None:
        for candidate in candidates:
            await checkpoint()
            try:
                outcome = await merge(candidate)
            except CandidateValidationError as exc:
                self._record_error(progress, f"{target.label}: invalid candidate ({exc})")
                continue
            except PersistenceError as exc:
                structured_log(
                    logger,
                    "warning",
                    "collector.candidate_persist_failed",
                    target=target.key,
                    detail=str(exc),
                )
                self._record_error(progress, f"{target.label}: storage failed ({exc})")
                continue
            except ControlInterrupt:
                raise
            except Exception as exc:
                logger.exception(
                    "collector.candidate_failed",
                    extra={"event": "collector.candidate_failed", "target": target.key},
                )
                self._record_error(
                    progress,
                    f"{target.label}: unexpected merge error ({exc.__class__.__name__}: {exc})",
                )
                continue
            if outcome.is_new:
                progress.created_count += 1
            else:
                progress.skipped_count += 1

    async def execute(
        self,
        *,
        targets: Sequence[CollectorTarget],
        fetch: FetchFunction,
        merge: MergeFunction,
        checkpoint: CheckpointFunction,
        on_progress: ProgressCallback | None = None,
        progress: RunProgress | None = None,
    ) -> RunProgress:
        progress = progress if progress is not None else RunProgress()
        total = len(targets)
        try:
            for index, target in enumerate(targets):
                await checkpoint()
                candidates = await self._fetch(fetch, target, progress)
                if candidates is not None:
                    self._activity(
                        ActivityLevel.INFO,
                        f"{target.label}: {len(candidates)} candidate(s) fetched",
                    )
                    await self._merge_candidates(
                        candidates,
                        target=target,
                        merge=merge,
                        checkpoint=checkpoint,
                        progress=progress,
                    )
                progress.targets_processed += 1
                structured_log(
                    logger,
                    "info",
                    "collector.target_processed",
                    target=target.key,
                    targets_processed=progress.targets_processed,
                    targets_total=total,
                    created_count=progress.created_count,
                    skipped_count=progress.skipped_count,
                    errored_count=progress.errored_count,
                )
                if on_progress is not None and progress.targets_processed % self._progress_interval == 0:
                    await on_progress(progress)
                if index < total - 1 and self._inter_target_delay_seconds > 0:
                    await self._sleep(self._inter_target_delay_seconds)
        except ControlInterrupt as interrupt:
            progress.interrupted_reason = interrupt.reason
            self._activity(
                ActivityLevel.WARNING,
                f"Run interrupted ({interrupt.reason}) after {progress.targets_processed}/{total} target(s)",
            )
            structured_log(
                logger,
                "info",
                "collector.run_interrupted",
                reason=interrupt.reason,
                targets_processed=progress.targets_processed,
                targets_total=total,
            )
        return progress
