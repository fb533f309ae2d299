from __future__ import annotations

from datetime import date, datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from shopassist.core.config import Settings, settings as default_settings
from shopassist.core.exceptions import StoreNotFoundError
from shopassist.core.logging import get_logger
from shopassist.models.tenant import PricingPlan, Store
from shopassist.models.usage import UsageMetric
from shopassist.schemas.usage import PlanInfo, UsageHistoryItem, UsageSnapshot, UsageStatus

logger = get_logger(__name__)

UNLIMITED = -1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_key(now: Optional[datetime] = None) -> date:
    """First day of the current UTC month; the usage counter bucket."""
    now = now or _utc_now()
    return date(now.year, now.month, 1)


def next_month_reset(now: Optional[datetime] = None) -> datetime:
    now = now or _utc_now()
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def usage_status(percent_used: float, limit: int, config: Optional[Settings] = None) -> UsageStatus:
    config = config or default_settings
    if limit == UNLIMITED:
        return "ok"
    if percent_used >= 100:
        return "exceeded"
    if percent_used >= config.USAGE_CRITICAL_PERCENT:
        return "critical"
    if percent_used >= config.USAGE_WARNING_PERCENT:
        return "warning"
    return "ok"


def build_usage_snapshot(
    *,
    store_id: UUID,
    plan: Optional[PricingPlan],
    message_count: int,
    now: Optional[datetime] = None,
    config: Optional[Settings] = None,
) -> UsageSnapshot:
    config = config or default_settings
    now = now or _utc_now()

    if plan is not None:
        plan_info = PlanInfo(
            id=str(plan.id),
            name=plan.name,
            display_name=plan.display_name,
            limit=plan.monthly_message_limit,
        )
    else:
        plan_info = PlanInfo(name="free", display_name="Free", limit=config.FREE_TIER_MESSAGE_LIMIT)

    limit = plan_info.limit
    if limit == UNLIMITED:
        remaining = UNLIMITED
        percent_used = 0.0
    elif limit <= 0:
        remaining = 0
        percent_used = 100.0
    else:
        remaining = max(0, limit - message_count)
        percent_used = message_count / limit * 100

    return UsageSnapshot(
        store_id=str(store_id),
        plan=plan_info,
        current_month=month_key(now).isoformat(),
        message_count=message_count,
        remaining=remaining,
        percent_used=round(percent_used, 1),
        resets_at=next_month_reset(now).isoformat().replace("+00:00", "Z"),
        status=usage_status(percent_used, limit, config),
    )


class UsageService:
    """Monthly message quota per store, backed by one counter row per (store, month)."""

    def __init__(self, db: AsyncSession, config: Optional[Settings] = None):
        self.db = db
        self.settings = config or default_settings

    async def _load_store_plan(self, store_id: UUID) -> Tuple[Store, Optional[PricingPlan]]:
        store = await self.db.get(Store, store_id)
        if store is None:
            raise StoreNotFoundError()
        plan = None
        if store.plan_id is not None:
            plan = await self.db.get(PricingPlan, store.plan_id)
        return store, plan

    async def get_store_usage(self, store_id: UUID, now: Optional[datetime] = None) -> UsageSnapshot:
        now = now or _utc_now()
        _, plan = await self._load_store_plan(store_id)
        count = await self.db.scalar(
            select(UsageMetric.message_count)
            .where(UsageMetric.store_id == store_id)
            .where(UsageMetric.month == month_key(now))
        )
        return build_usage_snapshot(
            store_id=store_id,
            plan=plan,
            message_count=int(count or 0),
            now=now,
            config=self.settings,
        )

    async def can_send_message(self, store_id: UUID) -> Tuple[bool, UsageSnapshot]:
        usage = await self.get_store_usage(store_id)
        return usage.allowed, usage

    @staticmethod
    def increment_statement(store_id: UUID, month: date):
        stmt = insert(UsageMetric).values(store_id=store_id, month=month, message_count=1)
        return stmt.on_conflict_do_update(
            index_elements=[UsageMetric.store_id, UsageMetric.month],
            set_={
                "message_count": UsageMetric.message_count + 1,
                "updated_at": func.now(),
            },
        )

    async def increment_usage(self, store_id: UUID, now: Optional[datetime] = None) -> None:
        """Atomic +1 for the current month; creates the row on the first message."""
        await self.db.execute(self.increment_statement(store_id, month_key(now)))
        await self.db.commit()

    async def get_usage_history(self, store_id: UUID, months: int = 6) -> List[UsageHistoryItem]:
        result = await self.db.execute(
            select(UsageMetric.month, UsageMetric.message_count)
            .where(UsageMetric.store_id == store_id)
            .order_by(UsageMetric.month.desc())
            .limit(months)
        )
        return [UsageHistoryItem(month=month.isoformat(), count=count) for month, count in result.all()]
