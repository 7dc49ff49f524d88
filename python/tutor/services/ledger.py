"""Usage ledger: per-user, per-billing-period counters checked against plan limits.

Reservation is a single conditional UPDATE that adds the requested units
only while every bounded counter stays within its limit:

    UPDATE usage_records
       SET questions_used = questions_used + 1, ...
     WHERE id = :record AND questions_used + 1 <= :limit ...

Zero rows updated means the quota is exhausted. PostgreSQL re-evaluates the
WHERE clause after acquiring the row lock, so concurrent reservations for
the same user can never both pass against a stale counter.

Credits are committed once per job id: the commit marker insert uses
ON CONFLICT DO NOTHING, and only the caller whose insert landed adds to
credits_consumed.

Period rollover is lazy. The billing window is derived on every call from
the active subscription (advanced by whole periods once current_period_end
has passed) or, for users without one, the current calendar month. A new
window gets a new usage_records row; old rows stay as history.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from tutor.config import Settings
from tutor.db.models import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    SubscriptionPackage,
    UsageCommit,
    UsageRecord,
    UserSubscription,
)
from tutor.db.types import utcnow
from tutor.errors import QuotaExceededError
from tutor.logging import get_logger

logger = get_logger(__name__)

UNLIMITED = -1


class UsageKind(str, Enum):
    """Metered usage counters."""

    QUESTIONS = "questions"
    CHATS = "chats"
    FILE_UPLOADS = "file_uploads"


_COUNTER_COLUMNS = {
    UsageKind.QUESTIONS: "questions_used",
    UsageKind.CHATS: "chats_used",
    UsageKind.FILE_UPLOADS: "file_uploads_used",
}


def _normalize_limit(value: int | None) -> int:
    """NULL and any negative limit mean unlimited."""
    if value is None or value < 0:
        return UNLIMITED
    return value


@dataclass(frozen=True)
class PlanLimits:
    """Limits for one billing period. UNLIMITED (-1) bypasses the check."""

    max_questions: int
    max_chats: int
    max_file_uploads: int
    credit_multiplier: float = 1.0
    name: str = "free"

    def limit_for(self, kind: UsageKind) -> int:
        return {
            UsageKind.QUESTIONS: self.max_questions,
            UsageKind.CHATS: self.max_chats,
            UsageKind.FILE_UPLOADS: self.max_file_uploads,
        }[kind]

    @classmethod
    def from_package(cls, package: SubscriptionPackage) -> "PlanLimits":
        return cls(
            max_questions=_normalize_limit(package.max_questions_per_month),
            max_chats=_normalize_limit(package.max_chats_per_month),
            max_file_uploads=_normalize_limit(package.max_file_uploads),
            credit_multiplier=package.credit_multiplier,
            name=package.name,
        )


@dataclass(frozen=True)
class BillingPeriod:
    """Half-open window [start, end)."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class UserPlan:
    limits: PlanLimits
    period: BillingPeriod


@dataclass(frozen=True)
class UsageSnapshot:
    """Current-period usage and limits for one user."""

    plan_name: str
    period: BillingPeriod
    questions_used: int
    chats_used: int
    file_uploads_used: int
    credits_consumed: float
    limits: PlanLimits

    def remaining(self, kind: UsageKind) -> int:
        """Units left in the period, or UNLIMITED."""
        limit = self.limits.limit_for(kind)
        if limit == UNLIMITED:
            return UNLIMITED
        used = getattr(self, _COUNTER_COLUMNS[kind])
        return max(0, limit - used)


def calendar_month(now: datetime) -> BillingPeriod:
    """The calendar month containing now, in UTC."""
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return BillingPeriod(start=start, end=end)


def rolled_period(start: datetime, end: datetime, now: datetime) -> BillingPeriod:
    """Advance a subscription window by whole periods until it contains now."""
    if now < end:
        return BillingPeriod(start=start, end=end)
    length: timedelta = end - start
    elapsed = (now - start) // length
    new_start = start + length * elapsed
    return BillingPeriod(start=new_start, end=new_start + length)


def _dialect_insert(db: Session):
    """Dialect-specific INSERT supporting ON CONFLICT DO NOTHING."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


class UsageLedger:
    """Reserve and commit usage against a user's plan.

    Constructed once per process; every method takes the caller's session
    and never commits it, so reservations share the caller's transaction.
    """

    def __init__(self, free_tier: PlanLimits):
        self._free_tier = free_tier

    @classmethod
    def from_settings(cls, settings: Settings) -> "UsageLedger":
        return cls(
            PlanLimits(
                max_questions=_normalize_limit(settings.free_tier_max_questions),
                max_chats=_normalize_limit(settings.free_tier_max_chats),
                max_file_uploads=_normalize_limit(settings.free_tier_max_file_uploads),
                credit_multiplier=settings.free_tier_credit_multiplier,
                name="free",
            )
        )

    # =========================================================================
    # Plan resolution
    # =========================================================================

    def resolve_plan(self, db: Session, user_id: int, now: datetime | None = None) -> UserPlan:
        """Find the limits and billing window that apply to a user right now."""
        now = now or utcnow()
        subscription = db.execute(
            select(UserSubscription)
            .join(SubscriptionPackage, SubscriptionPackage.id == UserSubscription.package_id)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES),
                SubscriptionPackage.is_active.is_(True),
            )
            .order_by(UserSubscription.current_period_end.desc(), UserSubscription.id.desc())
            .limit(1)
        ).scalar_one_or_none()

        if subscription is None:
            return UserPlan(limits=self._free_tier, period=calendar_month(now))

        return UserPlan(
            limits=PlanLimits.from_package(subscription.package),
            period=rolled_period(
                subscription.current_period_start, subscription.current_period_end, now
            ),
        )

    def _ensure_record(self, db: Session, user_id: int, period: BillingPeriod) -> int:
        """Get or lazily create the usage row for a period. Returns its id."""
        insert = _dialect_insert(db)
        now = utcnow()
        db.execute(
            insert(UsageRecord)
            .values(
                user_id=user_id,
                period_start=period.start,
                period_end=period.end,
                questions_used=0,
                chats_used=0,
                file_uploads_used=0,
                credits_consumed=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "period_start"])
        )
        return db.execute(
            select(UsageRecord.id).where(
                UsageRecord.user_id == user_id,
                UsageRecord.period_start == period.start,
            )
        ).scalar_one()

    def _find_record(
        self, db: Session, user_id: int, period: BillingPeriod
    ) -> UsageRecord | None:
        return db.execute(
            select(UsageRecord).where(
                UsageRecord.user_id == user_id,
                UsageRecord.period_start == period.start,
            )
        ).scalar_one_or_none()

    # =========================================================================
    # Reserve
    # =========================================================================

    def check(
        self,
        db: Session,
        user_id: int,
        units: dict[UsageKind, int],
        now: datetime | None = None,
    ) -> None:
        """Non-binding pre-check. Raises QuotaExceededError if units cannot fit.

        Used to reject early before expensive work (attachment upload); the
        binding decision is still reserve().
        """
        plan = self.resolve_plan(db, user_id, now)
        record = self._find_record(db, user_id, plan.period)
        for kind, amount in units.items():
            limit = plan.limits.limit_for(kind)
            if amount <= 0 or limit == UNLIMITED:
                continue
            used = getattr(record, _COUNTER_COLUMNS[kind]) if record is not None else 0
            if used + amount > limit:
                raise QuotaExceededError(kind.value, limit)

    def reserve(
        self,
        db: Session,
        user_id: int,
        units: dict[UsageKind, int],
        now: datetime | None = None,
    ) -> int:
        """Atomically check and increment counters for one admission.

        All kinds are reserved together or not at all.

        Args:
            db: Caller's session; the increment joins the caller's transaction.
            user_id: Metered user.
            units: Amount per usage kind.
            now: Clock override for tests.

        Returns:
            The usage record id charged.

        Raises:
            QuotaExceededError: If any bounded counter would pass its limit.
        """
        plan = self.resolve_plan(db, user_id, now)
        record_id = self._ensure_record(db, user_id, plan.period)

        values: dict = {}
        stmt = update(UsageRecord).where(UsageRecord.id == record_id)
        for kind, amount in units.items():
            if amount <= 0:
                continue
            column = getattr(UsageRecord, _COUNTER_COLUMNS[kind])
            values[_COUNTER_COLUMNS[kind]] = column + amount
            limit = plan.limits.limit_for(kind)
            if limit != UNLIMITED:
                stmt = stmt.where(column + amount <= limit)

        if not values:
            return record_id

        values["updated_at"] = utcnow()
        result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))

        if result.rowcount == 0:
            kind, limit = self._exhausted_kind(db, record_id, plan.limits, units)
            logger.warning(
                "ledger.reserve_rejected",
                user_id=user_id,
                kind=kind.value,
                limit=limit,
                plan=plan.limits.name,
            )
            raise QuotaExceededError(kind.value, limit)

        logger.info(
            "ledger.reserved",
            user_id=user_id,
            usage_record_id=record_id,
            **{kind.value: amount for kind, amount in units.items() if amount > 0},
        )
        return record_id

    def _exhausted_kind(
        self,
        db: Session,
        record_id: int,
        limits: PlanLimits,
        units: dict[UsageKind, int],
    ) -> tuple[UsageKind, int]:
        """Name the counter that blocked a reservation, for the error message."""
        record = db.get(UsageRecord, record_id)
        db.refresh(record)
        for kind, amount in units.items():
            limit = limits.limit_for(kind)
            if amount > 0 and limit != UNLIMITED:
                if getattr(record, _COUNTER_COLUMNS[kind]) + amount > limit:
                    return kind, limit
        # Lost to a concurrent reservation that has since been rolled back
        kind = next(k for k, a in units.items() if a > 0 and limits.limit_for(k) != UNLIMITED)
        return kind, limits.limit_for(kind)

    # =========================================================================
    # Commit
    # =========================================================================

    def commit(
        self,
        db: Session,
        user_id: int,
        job_id: str,
        base_credits: float,
        now: datetime | None = None,
    ) -> float | None:
        """Record credits consumed by a finished job, at most once per job id.

        The plan's credit multiplier is applied here.

        Returns:
            Credits added, or None if this job was already committed.
        """
        plan = self.resolve_plan(db, user_id, now)
        record_id = self._ensure_record(db, user_id, plan.period)
        credits = base_credits * plan.limits.credit_multiplier

        insert = _dialect_insert(db)
        marker = db.execute(
            insert(UsageCommit)
            .values(
                job_id=job_id,
                user_id=user_id,
                usage_record_id=record_id,
                credits=credits,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["job_id"])
        )
        if marker.rowcount == 0:
            logger.info("ledger.commit_duplicate", user_id=user_id, job_id=job_id)
            return None

        db.execute(
            update(UsageRecord)
            .where(UsageRecord.id == record_id)
            .values(
                credits_consumed=UsageRecord.credits_consumed + credits,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "ledger.credits_committed",
            user_id=user_id,
            job_id=job_id,
            credits=credits,
            credit_multiplier=plan.limits.credit_multiplier,
        )
        return credits

    # =========================================================================
    # Read
    # =========================================================================

    def snapshot(self, db: Session, user_id: int, now: datetime | None = None) -> UsageSnapshot:
        """Current-period usage without creating a record."""
        plan = self.resolve_plan(db, user_id, now)
        record = self._find_record(db, user_id, plan.period)
        return UsageSnapshot(
            plan_name=plan.limits.name,
            period=plan.period,
            questions_used=record.questions_used if record else 0,
            chats_used=record.chats_used if record else 0,
            file_uploads_used=record.file_uploads_used if record else 0,
            credits_consumed=float(record.credits_consumed) if record else 0.0,
            limits=plan.limits,
        )
