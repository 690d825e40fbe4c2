from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Float, ForeignKey, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from perkhub_api.db.base import Base


class EstablishmentStatusEnum(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Establishment(Base):
    """Partner venue where members redeem vouchers."""

    __tablename__ = "establishments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    partner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    operator_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    name = Column(String, nullable=False)
    discount_description = Column(Text, nullable=True)
    status = Column(
        SqlEnum(
            EstablishmentStatusEnum,
            name="establishment_status_enum",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
        default=EstablishmentStatusEnum.ACTIVE,
        server_default=EstablishmentStatusEnum.ACTIVE.value,
    )
    voucher_cooldown_hours = Column(Float, nullable=True)
    voucher_expiration_hours = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    partner = relationship("User", foreign_keys=[partner_id])
