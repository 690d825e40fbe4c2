from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from perkhub_api.db.base import Base


class NotificationStatusEnum(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationCategoryEnum(str, Enum):
    RATING_REQUEST = "rating_request"


class Notification(Base):
    """Companion record created alongside voucher transitions.

    A ``rating_request`` row exists for a voucher exactly when that voucher has
    been checked in.
    """

    __tablename__ = "notifications"
    __table_args__ = (
        UniqueConstraint("voucher_id", "category", name="uq_notifications_voucher_category"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    category = Column(
        SqlEnum(
            NotificationCategoryEnum,
            name="notification_category_enum",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
    )
    status = Column(
        SqlEnum(
            NotificationStatusEnum,
            name="notification_status_enum",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
        default=NotificationStatusEnum.PENDING,
        server_default=NotificationStatusEnum.PENDING.value,
    )
    voucher_id = Column(UUID(as_uuid=True), ForeignKey("vouchers.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(String(128), nullable=False)
    establishment_id = Column(UUID(as_uuid=True), ForeignKey("establishments.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
