from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID

from perkhub_api.db.base import Base


class UserRoleEnum(str, Enum):
    MEMBER = "member"
    PARTNER = "partner"
    BUSINESS = "business"
    MASTER = "master"


class UserStatusEnum(str, Enum):
    ACTIVE = "active"
    INVITED = "invited"
    BLOCKED = "blocked"


class User(Base):
    """Members, partners and establishment operators.

    ``auth_uid`` is the identifier issued by the external auth provider. Older
    records were written with it missing, or with the auth id stored in place of
    the document id, which is why lookups go through the identity resolver.
    """

    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    auth_uid = Column(String(128), nullable=True, unique=True, index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    phone_number = Column(String(32), nullable=True)
    photo_url = Column(String, nullable=True)
    role = Column(String(length=16), nullable=False, default=UserRoleEnum.MEMBER.value, server_default=UserRoleEnum.MEMBER.value)
    status = Column(String(length=16), nullable=False, default=UserStatusEnum.ACTIVE.value, server_default=UserStatusEnum.ACTIVE.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
