"""Voucher and generation throttle models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from perkhub_api.db.base import Base


class VoucherStatusEnum(str, Enum):
    """Voucher lifecycle; statuses only move forward."""

    PENDING = "pending"
    VERIFIED = "verified"
    USED = "used"
    EXPIRED = "expired"


class Voucher(Base):
    """Single-use discount token tied to one member and one establishment."""

    __tablename__ = "vouchers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(32), nullable=False, unique=True, index=True)
    establishment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("establishments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    # Plain reference: legacy rows hold either a document id or an auth id.
    member_id = Column(String(128), nullable=False, index=True)
    member_email = Column(String, nullable=True)
    status = Column(
        SqlEnum(
            VoucherStatusEnum,
            name="voucher_status_enum",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
        default=VoucherStatusEnum.PENDING,
        server_default=VoucherStatusEnum.PENDING.value,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(String(128), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_by = Column(String(128), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    establishment = relationship("Establishment")


class GenerationThrottle(Base):
    """Last successful voucher generation per (establishment, member)."""

    __tablename__ = "voucher_generation_throttles"
    __table_args__ = (
        UniqueConstraint("establishment_id", "member_id", name="uq_voucher_throttle_pair"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    establishment_id = Column(
        UUID(as_uuid=True),
        ForeignKey("establishments.id", ondelete="CASCADE"),
        nullable=False,
    )
    member_id = Column(String(128), nullable=False)
    last_generated_at = Column(DateTime(timezone=True), nullable=False)
