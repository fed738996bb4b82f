from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from enum import StrEnum
import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from profilehub.db.models import CollectorControlState, CollectorStatus
from profilehub.logging_utils import structured_log

logger = logging.getLogger(__name__)

DEFAULT_STATUS = CollectorStatus.RUNNING


class ControlAction(StrEnum):
    START = "start"
    PAUSE = "pause"
    STOP = "stop"


_ACTION_STATUS = {
    ControlAction.START: CollectorStatus.RUNNING,
    ControlAction.PAUSE: CollectorStatus.PAUSED,
    ControlAction.STOP: CollectorStatus.STOPPED,
}


def status_for_action(action: ControlAction | str) -> CollectorStatus:
    return _ACTION_STATUS[ControlAction(action)]


class ControlStateStore(Protocol):
    async def get_status(self, name: str) -> CollectorStatus: ...

    async def set_status(self, name: str, status: CollectorStatus) -> None: ...

    async def should_run(self, name: str) -> bool: ...

    async def get_all(self, names: Iterable[str]) -> dict[str, CollectorStatus]: ...


class InMemoryControlStateStore:
    def __init__(self, initial: dict[str, CollectorStatus] | None = None) -> None:
        self._statuses: dict[str, CollectorStatus] = dict(initial or {})

    async def get_status(self, name: str) -> CollectorStatus:
        return self._statuses.get(name, DEFAULT_STATUS)

    async def set_status(self, name: str, status: CollectorStatus) -> None:
        self._statuses[name] = CollectorStatus(status)
        structured_log(logger, "info", "control.status_set", collector=name, status=str(status))

    async def should_run(self, name: str) -> bool:
        return await self.get_status(name) == CollectorStatus.RUNNING

    async def get_all(self, names: Iterable[str]) -> dict[str, CollectorStatus]:
        return {name: await self.get_status(name) for name in names}


class SqlControlStateStore:
    """Control state persisted in ``collector_control_states``.

    Every call uses its own short session so a collector checkpoint never
    shares a transaction with merge work.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_status(self, name: str) -> CollectorStatus:
        async with self._session_factory() as db_session:
            result = await db_session.execute(
                select(CollectorControlState.status).where(CollectorControlState.collector == name)
            )
            status = result.scalar_one_or_none()
        return status or DEFAULT_STATUS

    async def set_status(self, name: str, status: CollectorStatus) -> None:
        status = CollectorStatus(status)
        async with self._session_factory() as db_session:
            if await self._write(db_session, name, status):
                return
        # Lost an insert race with another writer; the row exists now.
        async with self._session_factory() as db_session:
            await self._write(db_session, name, status)

    async def _write(self, db_session: AsyncSession, name: str, status: CollectorStatus) -> bool:
        row = await db_session.get(CollectorControlState, name)
        if row is None:
            db_session.add(CollectorControlState(collector=name, status=status))
        else:
            row.status = status
            row.updated_at = datetime.now(UTC)
        try:
            await db_session.commit()
        except IntegrityError:
            await db_session.rollback()
            if row is not None:
                raise
            return False
        structured_log(logger, "info", "control.status_set", collector=name, status=status.value)
        return True

    async def should_run(self, name: str) -> bool:
        return await self.get_status(name) == CollectorStatus.RUNNING

    async def get_all(self, names: Iterable[str]) -> dict[str, CollectorStatus]:
        requested = list(names)
        async with self._session_factory() as db_session:
            result = await db_session.execute(
                select(CollectorControlState.collector, CollectorControlState.status).where(
                    CollectorControlState.collector.in_(requested)
                )
            )
            stored = {collector: status for collector, status in result.all()}
        return {name: stored.get(name, DEFAULT_STATUS) for name in requested}
