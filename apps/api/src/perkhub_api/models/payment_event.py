"""Payment event ledger models and helpers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.db.base import Base
from perkhub_api.models.subscription import PaymentProviderEnum


class PaymentEventStatusEnum(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    PARKED = "parked"
    IGNORED = "ignored"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [item.value for item in enum_cls]


class PaymentEventRecord(Base):
    """Durable record for every inbound payment provider event."""

    __tablename__ = "payment_events"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    provider = Column(
        SqlEnum(PaymentProviderEnum, name="payment_provider_enum", values_callable=_enum_values),
        nullable=False,
    )
    external_id = Column(String(128), nullable=False)
    payload_hash = Column(String(128), nullable=False)
    event_type = Column(String(128), nullable=True)
    payload_json = Column("payload", JSON, nullable=True)
    status = Column(
        SqlEnum(PaymentEventStatusEnum, name="payment_event_status_enum", values_callable=_enum_values),
        nullable=False,
        default=PaymentEventStatusEnum.RECEIVED,
    )
    review_reason = Column(Text, nullable=True)
    subscription_id = Column(
        PG_UUID(as_uuid=True), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    replay_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    replayed_at = Column(DateTime(timezone=True), nullable=True)
    last_replay_error = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_payment_event_provider_external"),
        UniqueConstraint("provider", "payload_hash", name="uq_payment_event_provider_payload_hash"),
    )


@dataclass(slots=True)
class RecordedPaymentEvent:
    """Result container for payment event logging."""

    event: PaymentEventRecord
    created: bool


async def record_payment_event(
    session: AsyncSession,
    *,
    provider: PaymentProviderEnum,
    external_id: str,
    payload_hash: str,
    payload: dict[str, Any] | None,
    event_type: str | None = None,
    received_at: datetime | None = None,
) -> RecordedPaymentEvent:
    """Persist the payment event if it has not already been recorded."""

    stmt = select(PaymentEventRecord).where(
        PaymentEventRecord.provider == provider,
        PaymentEventRecord.external_id == external_id,
    )
    existing = (await session.execute(stmt)).scalar_one_or_none()
    if existing:
        return RecordedPaymentEvent(event=existing, created=False)

    stmt = select(PaymentEventRecord).where(
        PaymentEventRecord.provider == provider,
        PaymentEventRecord.payload_hash == payload_hash,
    )
    duplicate = (await session.execute(stmt)).scalar_one_or_none()
    if duplicate:
        return RecordedPaymentEvent(event=duplicate, created=False)

    event = PaymentEventRecord(
        provider=provider,
        external_id=external_id,
        payload_hash=payload_hash,
        event_type=event_type,
        payload_json=payload,
        received_at=received_at or datetime.now(timezone.utc),
        status=PaymentEventStatusEnum.RECEIVED,
    )
    session.add(event)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        stmt = select(PaymentEventRecord).where(
            PaymentEventRecord.provider == provider,
            PaymentEventRecord.external_id == external_id,
        )
        found = (await session.execute(stmt)).scalar_one_or_none()
        if found is None:
            raise
        return RecordedPaymentEvent(event=found, created=False)

    return RecordedPaymentEvent(event=event, created=True)


async def mark_event_outcome(
    session: AsyncSession,
    *,
    event: PaymentEventRecord,
    status: PaymentEventStatusEnum,
    processed_at: datetime,
    subscription_id: UUID | None = None,
    review_reason: str | None = None,
) -> PaymentEventRecord:
    """Stamp the reconciliation outcome onto a ledger entry."""

    event.status = status
    event.processed_at = processed_at
    event.review_reason = review_reason
    if subscription_id is not None:
        event.subscription_id = subscription_id
    await session.commit()
    return event


async def register_replay_attempt(
    session: AsyncSession,
    *,
    event: PaymentEventRecord,
    attempted_at: datetime,
    error: str | None = None,
) -> PaymentEventRecord:
    """Record a replay attempt and capture the outcome."""

    event.replay_attempts = (event.replay_attempts or 0) + 1
    event.replayed_at = attempted_at if error is None else event.replayed_at
    event.last_replay_error = error
    await session.commit()
    return event


async def fetch_parked_events(
    session: AsyncSession,
    *,
    limit: int = 50,
    max_attempts: int | None = None,
    providers: Iterable[PaymentProviderEnum] | None = None,
) -> list[PaymentEventRecord]:
    """Return parked events eligible for replay, oldest first."""

    stmt = select(PaymentEventRecord).where(PaymentEventRecord.status == PaymentEventStatusEnum.PARKED)
    if max_attempts is not None:
        stmt = stmt.where(PaymentEventRecord.replay_attempts < max_attempts)
    if providers:
        stmt = stmt.where(PaymentEventRecord.provider.in_(tuple(providers)))
    stmt = stmt.order_by(PaymentEventRecord.received_at.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
