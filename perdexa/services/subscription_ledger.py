"""
Tenant subscription state machine.

Owns every write to ``subscriptions``. Time-driven transitions (trial expiry,
period boundaries, grace expiry) are applied lazily whenever the ledger reads
a row, and eagerly by ``sweep()`` for tenants that never come back.
"""
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from perdexa.core.audit import log_billing_event
from perdexa.core.config import settings
from perdexa.core.errors import ConflictError, NotFoundError, ValidationError
from perdexa.db.session import atomic
from perdexa.models.audit_log import AuditEventType
from perdexa.models.subscription import Plan, Subscription, SubscriptionStatus
from perdexa.models.tenant import Tenant
from perdexa.utils.dates import isoformat, utcnow

logger = logging.getLogger(__name__)

S = SubscriptionStatus


class SubscriptionEvent(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_EXPIRED = "trial_expired"
    PERIOD_LAPSED = "period_lapsed"  # active period ran out without a renewal
    CANCEL_NOW = "cancel_now"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    PERIOD_ENDED = "period_ended"  # boundary crossed with cancel_at_period_end set
    GRACE_EXPIRED = "grace_expired"
    RESUME = "resume"


E = SubscriptionEvent

# Statuses each event may be applied from
ALLOWED_FROM = {
    E.PAYMENT_SUCCEEDED: {S.TRIALING, S.ACTIVE, S.PAST_DUE, S.UNPAID, S.INCOMPLETE, S.INCOMPLETE_EXPIRED},
    E.PAYMENT_FAILED: {S.TRIALING, S.ACTIVE, S.PAST_DUE},
    E.TRIAL_EXPIRED: {S.TRIALING},
    E.PERIOD_LAPSED: {S.ACTIVE},
    E.CANCEL_NOW: {s for s in S if s != S.CANCELED},
    E.CANCEL_AT_PERIOD_END: {S.TRIALING, S.ACTIVE, S.PAST_DUE},
    E.PERIOD_ENDED: {S.TRIALING, S.ACTIVE, S.PAST_DUE},
    E.GRACE_EXPIRED: {S.PAST_DUE},
    E.RESUME: {S.CANCELED},
}

CANCEL_MODES = ("now", "period_end")


@dataclass
class SweepResult:
    examined: int = 0
    applied: Dict[str, int] = field(default_factory=dict)

    def count(self, event: SubscriptionEvent):
        self.applied[event.value] = self.applied.get(event.value, 0) + 1

    def to_dict(self) -> dict:
        return {"examined": self.examined, "applied": dict(self.applied)}


def subscription_snapshot(sub: Optional[Subscription]) -> Optional[dict]:
    if sub is None:
        return None
    return {
        "id": str(sub.id),
        "tenant_id": str(sub.tenant_id),
        "plan": sub.plan.value,
        "status": sub.status.value,
        "provider": sub.provider,
        "current_period_start": isoformat(sub.current_period_start),
        "current_period_end": isoformat(sub.current_period_end),
        "trial_ends_at": isoformat(sub.trial_ends_at),
        "cancel_at_period_end": bool(sub.cancel_at_period_end),
        "seats": sub.seats,
        "seat_limit": sub.seat_limit,
        "grace_until": isoformat(sub.grace_until),
    }


def is_entitled(sub: Optional[Subscription], now: Optional[datetime] = None) -> bool:
    """Whether the tenant may use paid features right now."""
    if sub is None:
        return False
    now = now or utcnow()
    if sub.status in (S.ACTIVE, S.TRIALING):
        return True
    return sub.status == S.PAST_DUE and sub.grace_until is not None and sub.grace_until > now


def pending_event(sub: Subscription, now: datetime) -> Optional[SubscriptionEvent]:
    """The time-driven transition due for this row at ``now``, if any."""
    end = sub.current_period_end
    if sub.cancel_at_period_end and end is not None and end < now and sub.status in ALLOWED_FROM[E.PERIOD_ENDED]:
        return E.PERIOD_ENDED
    if sub.status == S.TRIALING and sub.trial_ends_at is not None and sub.trial_ends_at < now:
        return E.TRIAL_EXPIRED
    # Manual FREE subscriptions keep their status once a month is paid
    if sub.status == S.ACTIVE and sub.plan == Plan.PRO and end is not None and end < now:
        return E.PERIOD_LAPSED
    if sub.status == S.PAST_DUE and sub.grace_until is not None and sub.grace_until < now:
        return E.GRACE_EXPIRED
    return None


class SubscriptionLedger:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ------------------------------------------------------------------ reads

    def _query(self, tenant_id: uuid.UUID, lock: bool = False):
        q = self.db.query(Subscription).filter(Subscription.tenant_id == tenant_id)
        if lock:
            q = q.with_for_update()
        return q

    def get(self, tenant_id: uuid.UUID) -> Optional[Subscription]:
        """Current row with pending time-driven transitions applied, or None."""
        with atomic(self.db):
            sub = self._query(tenant_id, lock=True).first()
            if sub is not None:
                self.evaluate(sub)
        return sub

    def get_or_create(self, tenant_id: uuid.UUID, lock: bool = False) -> Subscription:
        """
        Return the tenant's subscription, creating FREE/trialing on first touch.

        Must be the first write of its unit of work: a lost creation race rolls
        the session back before re-reading the winner's row.
        """
        sub = self._query(tenant_id, lock=lock).first()
        if sub is not None:
            return sub

        if self.db.get(Tenant, tenant_id) is None:
            raise NotFoundError("tenant_not_found", f"Tenant {tenant_id} not found")

        now = self.clock()
        sub = Subscription(
            tenant_id=tenant_id,
            plan=Plan.FREE,
            status=S.TRIALING,
            provider="manual",
            trial_ends_at=now + timedelta(days=settings.FREE_TRIAL_DAYS),
            seats=1,
        )
        self.db.add(sub)
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"[BILLING] Subscription for tenant {tenant_id} created concurrently, re-reading")
            sub = self._query(tenant_id, lock=lock).first()
            if sub is None:
                raise
            return sub

        log_billing_event(
            self.db,
            AuditEventType.SUBSCRIPTION_CREATED,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=sub.id,
            details={"plan": sub.plan.value, "status": sub.status.value},
        )
        logger.info(f"[BILLING] Created FREE/trialing subscription for tenant {tenant_id}")
        return sub

    def load_for_update(self, tenant_id: uuid.UUID) -> Subscription:
        """get_or_create under a row lock, with pending transitions applied."""
        sub = self.get_or_create(tenant_id, lock=True)
        self.evaluate(sub)
        return sub

    # ----------------------------------------------------------------- writes

    def set_plan(self, tenant_id: uuid.UUID, plan, actor_id: Optional[uuid.UUID] = None) -> Subscription:
        """Administrative plan override. Status is left alone."""
        try:
            plan = Plan(plan)
        except ValueError:
            raise ValidationError("invalid_plan", f"Unknown plan: {plan!r}")

        with atomic(self.db):
            sub = self.load_for_update(tenant_id)
            previous = sub.plan
            sub.plan = plan
            log_billing_event(
                self.db,
                AuditEventType.PLAN_CHANGED,
                tenant_id=tenant_id,
                actor_id=actor_id,
                resource_type="subscription",
                resource_id=sub.id,
                details={"from": previous.value, "to": plan.value},
            )
        logger.info(f"[BILLING] Tenant {tenant_id} plan {previous.value} -> {plan.value}")
        return sub

    def transition(
        self,
        tenant_id: uuid.UUID,
        event: SubscriptionEvent,
        actor_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Apply one event to the tenant's subscription, atomically."""
        event = SubscriptionEvent(event)
        with atomic(self.db):
            sub = self.load_for_update(tenant_id)
            self.apply(sub, event, actor_id=actor_id, now=now)
        return sub

    def cancel(self, tenant_id: uuid.UUID, mode: str = "now", actor_id: Optional[uuid.UUID] = None) -> Subscription:
        if mode not in CANCEL_MODES:
            raise ValidationError("invalid_cancel_mode", f"mode must be one of {CANCEL_MODES}")
        event = E.CANCEL_NOW if mode == "now" else E.CANCEL_AT_PERIOD_END
        return self.transition(tenant_id, event, actor_id=actor_id)

    def resume(self, tenant_id: uuid.UUID, actor_id: Optional[uuid.UUID] = None) -> Subscription:
        """Reactivate a canceled subscription, or drop a scheduled cancellation."""
        with atomic(self.db):
            sub = self.load_for_update(tenant_id)
            if sub.status != S.CANCELED and sub.cancel_at_period_end:
                sub.cancel_at_period_end = False
                self._audit_transition(sub, E.RESUME, sub.status, actor_id)
                logger.info(f"[BILLING] Tenant {tenant_id} scheduled cancellation withdrawn")
            else:
                self.apply(sub, E.RESUME, actor_id=actor_id)
        return sub

    def apply(
        self,
        sub: Subscription,
        event: SubscriptionEvent,
        actor_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Apply ``event`` to a row the caller already holds (locked, inside a unit
        of work). Raises ConflictError for transitions the machine does not allow.
        """
        now = now or self.clock()
        previous = sub.status

        if previous not in ALLOWED_FROM[event]:
            raise ConflictError(
                "invalid_transition",
                f"Cannot apply {event.value} to a {previous.value} subscription",
                status=previous.value,
                event=event.value,
            )
        if event == E.PERIOD_ENDED and not sub.cancel_at_period_end:
            raise ConflictError("invalid_transition", "No cancellation is scheduled", status=previous.value, event=event.value)

        grace = timedelta(days=settings.GRACE_PERIOD_DAYS)

        if event == E.PAYMENT_SUCCEEDED:
            sub.status = S.ACTIVE
            sub.grace_until = None
            sub.trial_ends_at = None
        elif event == E.PAYMENT_FAILED:
            sub.status = S.PAST_DUE
            if previous != S.PAST_DUE or sub.grace_until is None:
                sub.grace_until = now + grace
        elif event == E.TRIAL_EXPIRED:
            expired_at = sub.trial_ends_at or now
            if sub.plan == Plan.FREE:
                sub.status = S.CANCELED
            else:
                sub.status = S.PAST_DUE
                sub.grace_until = expired_at + grace
        elif event == E.PERIOD_LAPSED:
            sub.status = S.PAST_DUE
            sub.grace_until = (sub.current_period_end or now) + grace
        elif event == E.CANCEL_NOW:
            sub.status = S.CANCELED
            sub.cancel_at_period_end = False
            sub.current_period_end = now
            sub.grace_until = None
        elif event == E.CANCEL_AT_PERIOD_END:
            sub.cancel_at_period_end = True
            if sub.current_period_end is None:
                sub.current_period_end = sub.trial_ends_at or now + timedelta(days=settings.DEFAULT_PERIOD_DAYS)
        elif event == E.PERIOD_ENDED:
            sub.status = S.CANCELED
            sub.cancel_at_period_end = False
            sub.grace_until = None
        elif event == E.GRACE_EXPIRED:
            sub.status = S.CANCELED
            sub.grace_until = None
        elif event == E.RESUME:
            sub.status = S.ACTIVE
            sub.cancel_at_period_end = False
            sub.grace_until = None
            sub.trial_ends_at = None
            sub.current_period_start = now
            sub.current_period_end = now + timedelta(days=settings.DEFAULT_PERIOD_DAYS)

        self.db.flush()
        self._audit_transition(sub, event, previous, actor_id)
        logger.info(f"[BILLING] Tenant {sub.tenant_id} {event.value}: {previous.value} -> {sub.status.value}")
        return sub

    def _audit_transition(self, sub, event, previous, actor_id):
        log_billing_event(
            self.db,
            AuditEventType.SUBSCRIPTION_TRANSITIONED,
            tenant_id=sub.tenant_id,
            actor_id=actor_id,
            resource_type="subscription",
            resource_id=sub.id,
            details={
                "event": event.value,
                "from": previous.value,
                "to": sub.status.value,
                "cancel_at_period_end": bool(sub.cancel_at_period_end),
            },
        )

    # ------------------------------------------------------- time-driven moves

    def evaluate(self, sub: Subscription, now: Optional[datetime] = None) -> list:
        """
        Apply every time-driven transition that is due. Returns the events
        applied, in order. The caller holds the row lock.
        """
        now = now or self.clock()
        applied = []
        # lapsed -> grace expired -> ... chains are at most three steps long
        for _ in range(4):
            event = pending_event(sub, now)
            if event is None:
                break
            self.apply(sub, event, now=now)
            applied.append(event)
        return applied

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Apply due time-driven transitions to every subscription.

        Each row is handled in its own unit of work under a row lock, so one
        bad row does not hold back the rest and concurrent payments serialize
        against the sweep.
        """
        now = now or self.clock()
        due = or_(
            and_(
                Subscription.cancel_at_period_end.is_(True),
                Subscription.current_period_end < now,
                Subscription.status.in_(list(ALLOWED_FROM[E.PERIOD_ENDED])),
            ),
            and_(Subscription.status == S.TRIALING, Subscription.trial_ends_at < now),
            and_(
                Subscription.status == S.ACTIVE,
                Subscription.plan == Plan.PRO,
                Subscription.current_period_end < now,
            ),
            and_(Subscription.status == S.PAST_DUE, Subscription.grace_until < now),
        )
        ids = [row.id for row in self.db.query(Subscription.id).filter(due).all()]
        result = SweepResult()
        for sub_id in ids:
            with atomic(self.db):
                sub = (
                    self.db.query(Subscription)
                    .filter(Subscription.id == sub_id)
                    .with_for_update()
                    .first()
                )
                if sub is None:
                    continue
                result.examined += 1
                for event in self.evaluate(sub, now=now):
                    result.count(event)
        logger.info(f"[SWEEP] examined={result.examined} applied={result.applied}")
        return result
