"""Identity resolution across document ids, external auth ids and emails."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.models.user import User
from perkhub_api.services.errors import IdentityUnresolvableError


STRATEGY_DOCUMENT_ID = "document_id"
STRATEGY_EXTERNAL_AUTH_ID = "external_auth_id"
STRATEGY_EMAIL = "email"
STRATEGY_PROVISIONAL = "provisional"


@dataclass(slots=True)
class IdentityHint:
    """Fragmentary identifiers supplied by a caller or a payment event."""

    document_id: str | None = None
    external_auth_id: str | None = None
    email: str | None = None

    def is_empty(self) -> bool:
        return not (self.document_id or self.external_auth_id or self.email)


@dataclass(slots=True)
class IdentityRepair:
    """Pending backfill of a record's external auth id."""

    user_id: UUID
    auth_uid: str
    strategy: str


@dataclass(slots=True)
class ResolvedIdentity:
    """Outcome of a resolution; ``user`` is ``None`` for provisional identities."""

    user: User | None
    strategy: str
    external_auth_id: str | None = None
    repair: IdentityRepair | None = None

    @property
    def provisional(self) -> bool:
        return self.user is None

    @property
    def user_id(self) -> UUID | None:
        return self.user.id if self.user is not None else None

    def reference_ids(self) -> set[str]:
        """All identifiers a legacy row may have stored for this identity."""

        ids: set[str] = set()
        if self.user is not None:
            ids.add(str(self.user.id))
            if self.user.auth_uid:
                ids.add(self.user.auth_uid)
        if self.external_auth_id:
            ids.add(self.external_auth_id)
        return ids


@dataclass(slots=True)
class IdentitySummary:
    """Display summary shown to operators."""

    id: UUID
    name: str | None
    email: str
    phone_number: str | None
    photo_url: str | None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_uuid(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class IdentityResolver:
    """Map a hint to the canonical user record using an ordered strategy list.

    Strategies run in order and the first match wins, so an exact document id
    always beats an email match. When a record is found through a secondary
    identifier and has no ``auth_uid`` yet, the supplied id is proposed as a
    repair; callers apply it with :meth:`apply_repairs` once their own
    transaction has committed.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._strategies: list[tuple[str, Callable[[IdentityHint], Awaitable[User | None]]]] = [
            (STRATEGY_DOCUMENT_ID, self._by_document_id),
            (STRATEGY_EXTERNAL_AUTH_ID, self._by_external_auth_id),
            (STRATEGY_EMAIL, self._by_email),
        ]

    async def resolve(self, hint: IdentityHint) -> ResolvedIdentity:
        """Resolve ``hint`` or raise :class:`IdentityUnresolvableError`."""

        hint = IdentityHint(
            document_id=_clean(hint.document_id),
            external_auth_id=_clean(hint.external_auth_id),
            email=_clean(hint.email.lower()) if hint.email else None,
        )
        if hint.is_empty():
            raise IdentityUnresolvableError(hint)

        for name, strategy in self._strategies:
            user = await strategy(hint)
            if user is None:
                continue
            return ResolvedIdentity(
                user=user,
                strategy=name,
                external_auth_id=user.auth_uid,
                repair=self._propose_repair(user, name, hint),
            )

        if hint.document_id:
            # Rows written by the auth provider flow store the auth id in the document id slot.
            return ResolvedIdentity(
                user=None,
                strategy=STRATEGY_PROVISIONAL,
                external_auth_id=hint.document_id,
            )
        raise IdentityUnresolvableError(hint)

    async def apply_repairs(self, repairs: Iterable[IdentityRepair | None]) -> int:
        """Persist pending ``auth_uid`` backfills, one commit each.

        Failures are logged and rolled back; they never reach the caller.
        """

        applied = 0
        for repair in repairs:
            if repair is None:
                continue
            user = await self._session.get(User, repair.user_id)
            if user is None:
                continue
            if user.auth_uid:
                if user.auth_uid != repair.auth_uid:
                    logger.warning(
                        "Skipped identity repair for record with a different auth id",
                        user_id=str(user.id),
                        existing_auth_uid=user.auth_uid,
                        proposed_auth_uid=repair.auth_uid,
                    )
                continue
            holder_stmt = select(User.id).where(User.auth_uid == repair.auth_uid)
            holder = (await self._session.execute(holder_stmt)).scalar_one_or_none()
            if holder is not None:
                logger.warning(
                    "Skipped identity repair for auth id held by another record",
                    user_id=str(user.id),
                    holder_id=str(holder),
                    auth_uid=repair.auth_uid,
                )
                continue
            user.auth_uid = repair.auth_uid
            try:
                await self._session.commit()
            except SQLAlchemyError as exc:
                await self._session.rollback()
                logger.warning(
                    "Identity repair failed",
                    user_id=str(repair.user_id),
                    auth_uid=repair.auth_uid,
                    error=str(exc),
                )
                continue
            applied += 1
            logger.info(
                "Identity repaired",
                user_id=str(repair.user_id),
                auth_uid=repair.auth_uid,
                strategy=repair.strategy,
            )
        return applied

    def describe(self, identity: ResolvedIdentity | None) -> IdentitySummary | None:
        if identity is None or identity.user is None:
            return None
        user = identity.user
        return IdentitySummary(
            id=user.id,
            name=user.display_name,
            email=user.email,
            phone_number=user.phone_number,
            photo_url=user.photo_url,
        )

    async def _by_document_id(self, hint: IdentityHint) -> User | None:
        document_id = _parse_uuid(hint.document_id)
        if document_id is None:
            return None
        return await self._session.get(User, document_id)

    async def _by_external_auth_id(self, hint: IdentityHint) -> User | None:
        candidates = [value for value in (hint.external_auth_id, hint.document_id) if value]
        for candidate in dict.fromkeys(candidates):
            stmt = select(User).where(User.auth_uid == candidate)
            user = (await self._session.execute(stmt)).scalar_one_or_none()
            if user is not None:
                return user
        return None

    async def _by_email(self, hint: IdentityHint) -> User | None:
        if not hint.email:
            return None
        stmt = select(User).where(func.lower(User.email) == hint.email).limit(1)
        return (await self._session.execute(stmt)).scalars().first()

    def _propose_repair(self, user: User, strategy: str, hint: IdentityHint) -> IdentityRepair | None:
        if strategy == STRATEGY_DOCUMENT_ID or user.auth_uid:
            return None
        supplied = hint.external_auth_id or hint.document_id
        if not supplied or supplied == str(user.id):
            return None
        return IdentityRepair(user_id=user.id, auth_uid=supplied, strategy=strategy)


__all__ = [
    "IdentityHint",
    "IdentityRepair",
    "IdentityResolver",
    "IdentitySummary",
    "ResolvedIdentity",
    "STRATEGY_DOCUMENT_ID",
    "STRATEGY_EMAIL",
    "STRATEGY_EXTERNAL_AUTH_ID",
    "STRATEGY_PROVISIONAL",
]
