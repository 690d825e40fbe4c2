"""Replay worker for parked payment events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.core.settings import settings
from perkhub_api.models.payment_event import (
    PaymentEventRecord,
    PaymentEventStatusEnum,
    fetch_parked_events,
    register_replay_attempt,
)
from perkhub_api.models.subscription import PaymentProviderEnum
from perkhub_api.services.errors import NotFoundError
from perkhub_api.services.subscriptions.reconciler import EntitlementReconciler, IngestResult


class ReplayLimitExceededError(RuntimeError):
    """Raised when replay attempts exceed configured thresholds."""


class PaymentEventReplayWorker:
    """Re-runs reconciliation for ledger entries that were parked.

    Parked entries are kept until a replay succeeds; every attempt is counted,
    and entries past ``max_attempts`` are skipped unless forced.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]],
        *,
        max_attempts: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._max_attempts = max_attempts if max_attempts is not None else settings.payment_event_replay_max_attempts

    async def process_parked(
        self,
        *,
        limit: int = 50,
        providers: Iterable[PaymentProviderEnum] | None = None,
    ) -> int:
        """Replay parked events; returns how many left the parked state."""

        session = await self._ensure_session()
        resolved = 0
        async with session as db:
            events = await fetch_parked_events(
                db, limit=limit, max_attempts=self._max_attempts, providers=providers
            )
            event_ids = [event.id for event in events]
            for event_id in event_ids:
                try:
                    result = await self._replay_single(db, event_id=event_id, force=False)
                except ReplayLimitExceededError:
                    continue
                if result.status != PaymentEventStatusEnum.PARKED:
                    resolved += 1
        if resolved:
            logger.info("Parked payment events replayed", resolved=resolved, attempted=len(event_ids))
        return resolved

    async def replay_event(self, event_id: UUID, *, force: bool = False) -> IngestResult:
        """Explicitly trigger replay for a single parked event."""

        session = await self._ensure_session()
        async with session as db:
            return await self._replay_single(db, event_id=event_id, force=force)

    async def _replay_single(
        self,
        session: AsyncSession,
        *,
        event_id: UUID,
        force: bool,
    ) -> IngestResult:
        event = await session.get(PaymentEventRecord, event_id)
        if event is None:
            raise NotFoundError("payment_event", event_id)

        if not force and event.replay_attempts >= self._max_attempts:
            raise ReplayLimitExceededError(f"Replay attempts exhausted for {event_id}")

        attempted_at = datetime.now(timezone.utc)
        result = await EntitlementReconciler(session).process_record(event, now=attempted_at)
        event = await session.get(PaymentEventRecord, event_id)
        error = event.review_reason if result.status == PaymentEventStatusEnum.PARKED else None
        await register_replay_attempt(session, event=event, attempted_at=attempted_at, error=error)
        return result

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session
