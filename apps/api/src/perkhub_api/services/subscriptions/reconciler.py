"""Entitlement reconciliation: payment events, batch links and checkout intents."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.core.settings import settings
from perkhub_api.models.payment_event import (
    PaymentEventRecord,
    PaymentEventStatusEnum,
    mark_event_outcome,
    record_payment_event,
)
from perkhub_api.models.subscription import (
    PartnerLink,
    PaymentProviderEnum,
    Subscription,
    SubscriptionStatusEnum,
)
from perkhub_api.models.user import User, UserRoleEnum
from perkhub_api.services.errors import (
    DuplicateEventError,
    IdentityUnresolvableError,
    MalformedEventError,
    NotFoundError,
    PartnerUnresolvableError,
    TransactionConflictError,
)
from perkhub_api.services.identity import IdentityHint, IdentityResolver, ResolvedIdentity
from perkhub_api.services.subscriptions.adapters import event_type_of, external_id_of, parse_payment_event
from perkhub_api.services.subscriptions.events import (
    PaymentEvent,
    PaymentEventKind,
    ReconciliationOutcome,
    ReconciliationResult,
)
from perkhub_api.services.subscriptions.intervals import add_interval
from perkhub_api.services.subscriptions.plans import PlanResolver
from perkhub_api.services.vouchers.expiration import as_utc, is_subscription_lapsed


@dataclass(slots=True)
class IngestResult:
    """Ledger status plus the reconciliation result, if one was attempted."""

    status: PaymentEventStatusEnum
    event_id: UUID
    result: ReconciliationResult | None = None


@dataclass(slots=True)
class PartnerAssignment:
    partner_id: UUID
    expires_at: datetime | None = None


@dataclass(slots=True)
class BatchLinkResult:
    created: list[Subscription] = field(default_factory=list)
    kept: list[Subscription] = field(default_factory=list)
    deactivated: list[Subscription] = field(default_factory=list)


@dataclass(slots=True)
class SubscriptionView:
    subscription: Subscription
    lapsed: bool


@dataclass(slots=True)
class _Expiry:
    expires_at: datetime | None
    plan_name: str | None
    interval: Any
    amount: Any
    review_reason: str | None = None


def payload_digest(payload: Mapping[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


class EntitlementReconciler:
    """Turns provider payment events into subscription records.

    Each event lands in exactly one commit: the new or promoted subscription,
    superseded subscriptions for the same member/partner pair and the partner
    link conversion counter move together. Idempotency rests on the unique
    ``(member_id, partner_id, payment_reference)`` constraint.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        resolver: IdentityResolver | None = None,
        plans: PlanResolver | None = None,
    ) -> None:
        self._session = session
        self._resolver = resolver or IdentityResolver(session)
        self._plans = plans or PlanResolver(session)

    async def ingest(
        self,
        provider: PaymentProviderEnum,
        payload: Mapping[str, Any],
        *,
        payload_hash: str | None = None,
        now: datetime | None = None,
    ) -> IngestResult:
        """Record ``payload`` in the ledger once and reconcile it."""

        now = now or datetime.now(timezone.utc)
        payload_hash = payload_hash or payload_digest(payload)
        recorded = await record_payment_event(
            self._session,
            provider=provider,
            external_id=external_id_of(provider, payload, payload_hash),
            payload_hash=payload_hash,
            payload=dict(payload),
            event_type=event_type_of(provider, payload),
            received_at=now,
        )
        if not recorded.created:
            logger.info(
                "Duplicate payment event ignored",
                provider=PaymentProviderEnum(provider).value,
                event_id=str(recorded.event.id),
            )
            return IngestResult(
                status=PaymentEventStatusEnum.DUPLICATE,
                event_id=recorded.event.id,
                result=ReconciliationResult(
                    ReconciliationOutcome.ALREADY_RECONCILED,
                    subscription_id=recorded.event.subscription_id,
                    reason="duplicate_event",
                ),
            )
        return await self.process_record(recorded.event, now=now)

    async def process_record(self, record: PaymentEventRecord, *, now: datetime | None = None) -> IngestResult:
        """Parse and reconcile a ledger entry, then stamp its outcome."""

        now = now or datetime.now(timezone.utc)
        record_id = record.id
        try:
            event = parse_payment_event(
                record.provider, record.payload_json or {}, received_at=as_utc(record.received_at) or now
            )
        except MalformedEventError as exc:
            await mark_event_outcome(
                self._session,
                event=record,
                status=PaymentEventStatusEnum.IGNORED,
                processed_at=now,
                review_reason=exc.detail,
            )
            logger.warning("Malformed payment event", event_id=str(record_id), detail=exc.detail)
            return IngestResult(
                status=PaymentEventStatusEnum.IGNORED,
                event_id=record_id,
                result=ReconciliationResult(ReconciliationOutcome.MALFORMED, reason=exc.detail),
            )

        if event is None:
            await mark_event_outcome(
                self._session, event=record, status=PaymentEventStatusEnum.IGNORED, processed_at=now
            )
            return IngestResult(status=PaymentEventStatusEnum.IGNORED, event_id=record_id)

        result = await self.reconcile(event, now=now)
        # Reconciliation may have rolled back, which expires the ledger row.
        record = await self._session.get(PaymentEventRecord, record_id)
        if result.parked:
            status = PaymentEventStatusEnum.PARKED
        elif result.outcome == ReconciliationOutcome.ALREADY_RECONCILED:
            status = PaymentEventStatusEnum.DUPLICATE
        else:
            status = PaymentEventStatusEnum.PROCESSED
        await mark_event_outcome(
            self._session,
            event=record,
            status=status,
            processed_at=now,
            subscription_id=result.subscription_id,
            review_reason=result.reason if result.parked else None,
        )
        return IngestResult(status=status, event_id=record_id, result=result)

    async def reconcile(self, event: PaymentEvent, *, now: datetime | None = None) -> ReconciliationResult:
        now = now or datetime.now(timezone.utc)
        if event.kind == PaymentEventKind.SUBSCRIPTION_CANCELED:
            return await self._deactivate(event, now)

        try:
            identity = await self._resolver.resolve(event.buyer)
        except IdentityUnresolvableError:
            return self._park_buyer(event, "buyer_unresolved")
        if identity.provisional:
            return self._park_buyer(event, "buyer_provisional")
        member_id = identity.user.id

        try:
            partner, link = await self._resolve_partner(event.partner_id, event.partner_link_id)
        except PartnerUnresolvableError:
            logger.warning(
                "Payment event parked: partner unresolved",
                provider=event.provider.value,
                payment_reference=event.payment_reference,
                partner_id=event.partner_id,
                partner_link_id=event.partner_link_id,
            )
            return ReconciliationResult(ReconciliationOutcome.PARKED_PARTNER, reason="partner_unresolved")
        partner_id = partner.id

        try:
            await self._ensure_not_reconciled(member_id, partner_id, event.payment_reference)
        except DuplicateEventError as exc:
            await self._apply_repair(identity)
            return ReconciliationResult(
                ReconciliationOutcome.ALREADY_RECONCILED, subscription_id=exc.subscription_id
            )

        expiry = await self._derive_expiry(event)
        newer_id = await self._find_newer_active(member_id, partner_id, event.occurred_at)
        subscription = await self._find_initiated(member_id, partner_id, event)
        promoted = subscription is not None
        if subscription is None:
            subscription = Subscription(
                member_id=member_id,
                partner_id=partner_id,
                payment_provider=event.provider,
                created_at=now,
            )
            self._session.add(subscription)

        # A late delivery of an older payment never displaces the newer entitlement.
        subscription.status = SubscriptionStatusEnum.ACTIVE if newer_id is None else SubscriptionStatusEnum.INACTIVE
        subscription.payment_reference = event.payment_reference
        subscription.provider_subscription_id = (
            event.provider_subscription_id or subscription.provider_subscription_id
        )
        subscription.paid_at = event.occurred_at
        subscription.partner_link_id = link.id if link is not None else subscription.partner_link_id
        subscription.plan_name = expiry.plan_name
        subscription.plan_interval = expiry.interval.unit if expiry.interval is not None else None
        subscription.plan_interval_count = expiry.interval.count if expiry.interval is not None else None
        subscription.amount = expiry.amount
        subscription.expires_at = expiry.expires_at
        subscription.review_required = expiry.review_reason is not None
        subscription.review_reason = expiry.review_reason
        subscription.updated_at = now

        try:
            await self._session.flush()
            subscription_id = subscription.id
            superseded = 0
            if newer_id is None:
                demoted = await self._session.execute(
                    update(Subscription)
                    .where(
                        Subscription.member_id == member_id,
                        Subscription.partner_id == partner_id,
                        Subscription.status == SubscriptionStatusEnum.ACTIVE,
                        Subscription.id != subscription_id,
                        or_(Subscription.paid_at.is_(None), Subscription.paid_at <= event.occurred_at),
                    )
                    .values(status=SubscriptionStatusEnum.INACTIVE, canceled_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                superseded = demoted.rowcount
            if link is not None and subscription.partner_link_id == link.id:
                await self._session.execute(
                    update(PartnerLink)
                    .where(PartnerLink.id == link.id)
                    .values(conversions=PartnerLink.conversions + 1, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            existing = await self._find_existing(member_id, partner_id, event.payment_reference)
            if existing is None:
                raise
            return ReconciliationResult(ReconciliationOutcome.ALREADY_RECONCILED, subscription_id=existing.id)

        logger.info(
            "Subscription reconciled",
            subscription_id=str(subscription_id),
            member_id=str(member_id),
            partner_id=str(partner_id),
            provider=event.provider.value,
            promoted=promoted,
            superseded=superseded,
            superseded_by=str(newer_id) if newer_id is not None else None,
            review_required=expiry.review_reason is not None,
        )
        await self._apply_repair(identity)
        return ReconciliationResult(
            ReconciliationOutcome.RECONCILED,
            subscription_id=subscription_id,
            reason="superseded_by_newer_payment" if newer_id is not None else expiry.review_reason,
        )

    async def batch_link_member(
        self,
        member_id: UUID,
        assignments: Sequence[PartnerAssignment],
        *,
        now: datetime | None = None,
    ) -> BatchLinkResult:
        """Replace the member's active partner set with ``assignments`` in one commit."""

        now = now or datetime.now(timezone.utc)
        member = await self._session.get(User, member_id)
        if member is None or member.role != UserRoleEnum.MEMBER.value:
            raise NotFoundError("member", member_id)

        wanted: dict[UUID, PartnerAssignment] = {}
        for assignment in assignments:
            partner = await self._session.get(User, assignment.partner_id)
            if partner is None or partner.role != UserRoleEnum.PARTNER.value:
                raise NotFoundError("partner", assignment.partner_id)
            wanted[partner.id] = assignment

        stmt = select(Subscription).where(
            Subscription.member_id == member.id,
            Subscription.status == SubscriptionStatusEnum.ACTIVE,
        )
        active = (await self._session.execute(stmt)).scalars().all()

        result = BatchLinkResult()
        kept_partners: set[UUID] = set()
        for subscription in active:
            assignment = wanted.get(subscription.partner_id)
            if assignment is None:
                subscription.status = SubscriptionStatusEnum.INACTIVE
                subscription.canceled_at = now
                subscription.updated_at = now
                result.deactivated.append(subscription)
                continue
            if assignment.expires_at is not None:
                subscription.expires_at = assignment.expires_at
                subscription.updated_at = now
            kept_partners.add(subscription.partner_id)
            result.kept.append(subscription)

        for partner_id, assignment in wanted.items():
            if partner_id in kept_partners:
                continue
            subscription = Subscription(
                member_id=member.id,
                partner_id=partner_id,
                status=SubscriptionStatusEnum.ACTIVE,
                payment_provider=PaymentProviderEnum.MANUAL,
                payment_reference=f"manual_{uuid4().hex}",
                expires_at=assignment.expires_at,
                created_at=now,
                updated_at=now,
            )
            self._session.add(subscription)
            result.created.append(subscription)

        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise TransactionConflictError(f"Batch link for member {member_id} could not be committed") from exc

        logger.info(
            "Member partner set replaced",
            member_id=str(member_id),
            created=len(result.created),
            kept=len(result.kept),
            deactivated=len(result.deactivated),
        )
        return result

    async def begin_checkout(
        self,
        member: IdentityHint,
        *,
        provider: PaymentProviderEnum,
        partner_id: str | None = None,
        partner_link_id: str | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        """Create an ``initiated`` soft record that a later payment event can promote."""

        now = now or datetime.now(timezone.utc)
        identity = await self._resolver.resolve(member)
        if identity.provisional:
            raise IdentityUnresolvableError(member)
        try:
            partner, link = await self._resolve_partner(partner_id, partner_link_id)
        except PartnerUnresolvableError as exc:
            raise NotFoundError("partner", partner_id or partner_link_id) from exc

        subscription = Subscription(
            member_id=identity.user.id,
            partner_id=partner.id,
            status=SubscriptionStatusEnum.INITIATED,
            payment_provider=provider,
            partner_link_id=link.id if link is not None else None,
            expires_at=now + timedelta(minutes=settings.checkout_initiated_ttl_minutes),
            created_at=now,
            updated_at=now,
        )
        self._session.add(subscription)
        if link is not None:
            await self._session.execute(
                update(PartnerLink)
                .where(PartnerLink.id == link.id)
                .values(clicks=PartnerLink.clicks + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        await self._session.commit()
        logger.info(
            "Checkout initiated",
            subscription_id=str(subscription.id),
            member_id=str(identity.user.id),
            partner_id=str(partner.id),
            provider=PaymentProviderEnum(provider).value,
        )
        await self._apply_repair(identity, subscription)
        return subscription

    async def purge_stale_checkouts(self, *, now: datetime | None = None) -> int:
        """Delete ``initiated`` records whose TTL has passed."""

        now = now or datetime.now(timezone.utc)
        stmt = (
            delete(Subscription)
            .where(
                Subscription.status == SubscriptionStatusEnum.INITIATED,
                Subscription.expires_at <= now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        if result.rowcount:
            logger.info("Purged stale checkout intents", purged=result.rowcount)
        return result.rowcount or 0

    async def list_member_subscriptions(
        self, member_id: str, *, now: datetime | None = None
    ) -> list[SubscriptionView]:
        now = now or datetime.now(timezone.utc)
        identity = await self._resolver.resolve(IdentityHint(document_id=str(member_id)))
        if identity.user is None:
            return []
        stmt = (
            select(Subscription)
            .where(
                Subscription.member_id == identity.user.id,
                Subscription.status != SubscriptionStatusEnum.INITIATED,
            )
            .order_by(Subscription.created_at.desc())
        )
        subscriptions = (await self._session.execute(stmt)).scalars().all()
        return [SubscriptionView(subscription=item, lapsed=is_subscription_lapsed(item, now)) for item in subscriptions]

    async def _deactivate(self, event: PaymentEvent, now: datetime) -> ReconciliationResult:
        keys = {event.payment_reference}
        if event.provider_subscription_id:
            keys.add(event.provider_subscription_id)
        stmt = select(Subscription).where(
            Subscription.payment_provider == event.provider,
            or_(
                Subscription.payment_reference.in_(keys),
                Subscription.provider_subscription_id.in_(keys),
            ),
        ).execution_options(populate_existing=True)
        matched = (await self._session.execute(stmt)).scalars().all()
        subscriptions = [item for item in matched if item.status != SubscriptionStatusEnum.INACTIVE]
        if matched and not subscriptions:
            # The cancellation names a payment that a renewal already superseded.
            subscriptions = await self._renewals_of(matched, event)
        if not subscriptions:
            return ReconciliationResult(ReconciliationOutcome.ALREADY_RECONCILED, reason="no_active_subscription")

        for subscription in subscriptions:
            subscription.status = SubscriptionStatusEnum.INACTIVE
            subscription.canceled_at = event.occurred_at
            subscription.updated_at = now
        subscription_id = subscriptions[0].id
        await self._session.commit()
        logger.info(
            "Subscription deactivated by provider",
            provider=event.provider.value,
            payment_reference=event.payment_reference,
            count=len(subscriptions),
        )
        return ReconciliationResult(ReconciliationOutcome.DEACTIVATED, subscription_id=subscription_id)

    async def _renewals_of(self, matched: Sequence[Subscription], event: PaymentEvent) -> list[Subscription]:
        """Active subscriptions that renewed one of ``matched`` before the cancellation."""

        stmt = select(Subscription).where(
            Subscription.payment_provider == event.provider,
            Subscription.status == SubscriptionStatusEnum.ACTIVE,
            or_(Subscription.paid_at.is_(None), Subscription.paid_at <= event.occurred_at),
        ).execution_options(populate_existing=True)
        lineages = {item.provider_subscription_id for item in matched if item.provider_subscription_id}
        if lineages:
            stmt = stmt.where(Subscription.provider_subscription_id.in_(lineages))
        elif event.provider == PaymentProviderEnum.LASTLINK:
            # Older Lastlink rows carry no subscription id; renewals share the member/partner pair.
            pairs = {(item.member_id, item.partner_id) for item in matched}
            stmt = stmt.where(
                or_(
                    *(
                        and_(Subscription.member_id == member_id, Subscription.partner_id == partner_id)
                        for member_id, partner_id in pairs
                    )
                )
            )
        else:
            return []
        return list((await self._session.execute(stmt)).scalars().all())

    async def _find_newer_active(self, member_id: UUID, partner_id: UUID, paid_at: datetime) -> UUID | None:
        stmt = (
            select(Subscription.id)
            .where(
                Subscription.member_id == member_id,
                Subscription.partner_id == partner_id,
                Subscription.status == SubscriptionStatusEnum.ACTIVE,
                Subscription.paid_at > paid_at,
            )
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalars().first()

    async def _resolve_partner(
        self, partner_id: str | None, partner_link_id: str | None
    ) -> tuple[User, PartnerLink | None]:
        link = await self._find_link(partner_link_id)
        partner: User | None = None
        if partner_id:
            try:
                identity = await self._resolver.resolve(IdentityHint(document_id=partner_id))
            except IdentityUnresolvableError:
                identity = None
            if identity is not None and identity.user is not None:
                partner = identity.user
        if partner is None and link is not None:
            partner = await self._session.get(User, link.partner_id)
        if partner is None or partner.role != UserRoleEnum.PARTNER.value:
            raise PartnerUnresolvableError({"partner_id": partner_id, "partner_link_id": partner_link_id})
        if link is not None and link.partner_id != partner.id:
            link = None
        return partner, link

    async def _find_link(self, partner_link_id: str | None) -> PartnerLink | None:
        if not partner_link_id:
            return None
        try:
            link = await self._session.get(PartnerLink, UUID(partner_link_id))
        except ValueError:
            link = None
        if link is not None:
            return link
        stmt = select(PartnerLink).where(PartnerLink.code == partner_link_id)
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def _ensure_not_reconciled(self, member_id: UUID, partner_id: UUID, reference: str) -> None:
        existing = await self._find_existing(member_id, partner_id, reference)
        if existing is not None:
            raise DuplicateEventError(existing.id)

    async def _find_existing(self, member_id: UUID, partner_id: UUID, reference: str) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.member_id == member_id,
            Subscription.partner_id == partner_id,
            Subscription.payment_reference == reference,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def _find_initiated(self, member_id: UUID, partner_id: UUID, event: PaymentEvent) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(
                Subscription.member_id == member_id,
                Subscription.partner_id == partner_id,
                Subscription.status == SubscriptionStatusEnum.INITIATED,
                Subscription.payment_provider == event.provider,
                or_(
                    Subscription.payment_reference.is_(None),
                    Subscription.payment_reference == event.payment_reference,
                ),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return (await self._session.execute(stmt)).scalars().first()

    async def _derive_expiry(self, event: PaymentEvent) -> _Expiry:
        interval = event.interval
        plan_name = event.plan_name
        amount = event.amount
        if interval is None:
            plan = await self._plans.resolve(event.provider, event.price_id)
            if plan is not None:
                interval = plan.interval
                plan_name = plan_name or plan.name
                amount = amount if amount is not None else plan.amount

        if interval is not None:
            return _Expiry(add_interval(event.occurred_at, interval), plan_name, interval, amount)
        if event.period_end is not None:
            return _Expiry(event.period_end, plan_name, None, amount)
        logger.warning(
            "Subscription needs review: billing interval unknown",
            provider=event.provider.value,
            payment_reference=event.payment_reference,
            price_id=event.price_id,
        )
        return _Expiry(None, plan_name, None, amount, review_reason="unknown_billing_interval")

    def _park_buyer(self, event: PaymentEvent, reason: str) -> ReconciliationResult:
        logger.warning(
            "Payment event parked: buyer unresolved",
            provider=event.provider.value,
            payment_reference=event.payment_reference,
            reason=reason,
        )
        return ReconciliationResult(ReconciliationOutcome.PARKED_BUYER, reason=reason)

    async def _apply_repair(self, identity: ResolvedIdentity, *instances: Any) -> None:
        if identity.repair is None:
            return
        await self._resolver.apply_repairs([identity.repair])
        for instance in instances:
            await self._session.refresh(instance)
