"""
Billing Gate: pre-flight cost checks and post-flight usage recording.

Pre-flight, `estimate_and_check()` prices a cheap token estimate (serialized
message size / 4 for input, a fixed output assumption) against the most
recent active pricing rule and rejects the request if the projected cost
would exceed the user's credits, monthly limit or daily limit, checked in
that order.

Post-flight, `record_usage()` prices the actual token counts and, in one
transaction, writes the UsageRecord, decrements credits, bumps the spend
counters and appends a CHARGE BillingRecord.

Storage access is synchronous SQLAlchemy; every public coroutine hands its
work to a worker thread via Database.run().
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from venuschat.chat.messages import ChatMessage
from venuschat.config.logging import get_logger
from venuschat.config.settings import BillingSettings
from venuschat.db.models import (
    BillingPlan,
    BillingRecord,
    BillingType,
    PaymentStatus,
    PricingRule,
    UsageRecord,
    UserBilling,
    utcnow,
)
from venuschat.db.session import Database

logger = get_logger(__name__)

REASON_INSUFFICIENT_CREDITS = "Insufficient credits"
REASON_MONTHLY_LIMIT = "Monthly limit exceeded"
REASON_DAILY_LIMIT = "Daily limit exceeded"

_PER_TOKENS = Decimal(1000)
_ZERO = Decimal("0")

# Prices per 1K tokens
DEFAULT_PRICING: list[tuple[str, str, str, str]] = [
    ("deepseek", "deepseek-chat", "0.0014", "0.0028"),
    ("deepseek", "deepseek-coder", "0.0014", "0.0028"),
    ("openai", "gpt-4o", "0.03", "0.06"),
    ("openai", "gpt-4o-mini", "0.0015", "0.006"),
    ("anthropic", "claude-3-5-sonnet", "0.015", "0.075"),
]


class CostBreakdown(BaseModel):
    input_cost: Decimal = _ZERO
    output_cost: Decimal = _ZERO
    total_cost: Decimal = _ZERO


class BillingSnapshot(BaseModel):
    """Read-only view of a user's billing state."""

    user_id: str
    plan: str
    credits: Decimal
    total_spent: Decimal
    current_month_spent: Decimal
    current_day_spent: Decimal
    monthly_limit: Decimal | None = None
    daily_limit: Decimal | None = None

    @classmethod
    def from_row(cls, row: UserBilling) -> BillingSnapshot:
        return cls(
            user_id=row.user_id,
            plan=row.plan,
            credits=row.credits,
            total_spent=row.total_spent,
            current_month_spent=row.current_month_spent,
            current_day_spent=row.current_day_spent,
            monthly_limit=row.monthly_limit,
            daily_limit=row.daily_limit,
        )

    def to_payload(self) -> dict[str, Any]:
        """camelCase JSON payload with money as floats."""
        def money(value: Decimal | None) -> float | None:
            return None if value is None else float(value)

        return {
            "plan": self.plan,
            "credits": money(self.credits),
            "totalSpent": money(self.total_spent),
            "currentMonthSpent": money(self.current_month_spent),
            "currentDaySpent": money(self.current_day_spent),
            "monthlyLimit": money(self.monthly_limit),
            "dailyLimit": money(self.daily_limit),
        }


class BillingCheck(BaseModel):
    can_proceed: bool
    reason: str | None = None
    estimated_cost: Decimal = _ZERO
    state: BillingSnapshot


class UsageSummaryRow(BaseModel):
    provider: str
    model_name: str
    requests: int
    input_tokens: int
    output_tokens: int
    total_tokens: int
    total_cost: Decimal


def estimate_input_tokens(messages: list[ChatMessage]) -> Decimal:
    """Serialized message size / 4: a deliberately rough proxy."""
    chars = sum(len(json.dumps(message.to_payload(), ensure_ascii=False)) for message in messages)
    return Decimal(chars) / 4


def _price(rule: PricingRule | None, input_tokens: Decimal | int, output_tokens: Decimal | int) -> CostBreakdown:
    if rule is None:
        return CostBreakdown()
    input_cost = rule.input_token_price * Decimal(input_tokens) / _PER_TOKENS
    output_cost = rule.output_token_price * Decimal(output_tokens) / _PER_TOKENS
    return CostBreakdown(
        input_cost=input_cost, output_cost=output_cost, total_cost=input_cost + output_cost
    )


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class BillingGate:
    """
    Billing checks and records for one storage backend.

    Args:
        db: Database handle
        settings: Output-token assumption and defaults for new accounts
    """

    def __init__(self, db: Database, settings: BillingSettings | None = None):
        self._db = db
        self._settings = settings or BillingSettings()

    # --- sync internals (run in a worker thread) ---

    def _pricing_rule(self, session: Session, provider: str, model_name: str) -> PricingRule | None:
        now = utcnow()
        stmt = (
            select(PricingRule)
            .where(
                PricingRule.provider == provider,
                PricingRule.model_name == model_name,
                PricingRule.is_active.is_(True),
                PricingRule.effective_from <= now,
                or_(PricingRule.effective_to.is_(None), PricingRule.effective_to >= now),
            )
            .order_by(PricingRule.effective_from.desc())
            .limit(1)
        )
        return session.scalars(stmt).first()

    def _get_or_create_billing(self, session: Session, user_id: str) -> UserBilling:
        row = session.scalars(select(UserBilling).where(UserBilling.user_id == user_id)).first()
        if row is None:
            row = UserBilling(
                user_id=user_id,
                plan=BillingPlan.FREE.value,
                credits=Decimal(self._settings.default_credits),
                total_spent=_ZERO,
                current_month_spent=_ZERO,
                current_day_spent=_ZERO,
                monthly_limit=Decimal(self._settings.default_monthly_limit),
                daily_limit=Decimal(self._settings.default_daily_limit),
            )
            session.add(row)
            session.flush()
            logger.info(f"Initialized billing for user {user_id}")
        return row

    def _check_sync(self, user_id: str, messages: list[ChatMessage], provider: str, model_name: str) -> BillingCheck:
        with self._db.session() as session, session.begin():
            rule = self._pricing_rule(session, provider, model_name)
            estimate = _price(
                rule, estimate_input_tokens(messages), self._settings.estimated_output_tokens
            )
            billing = self._get_or_create_billing(session, user_id)
            cost = estimate.total_cost

            reason = None
            if billing.credits < cost:
                reason = REASON_INSUFFICIENT_CREDITS
            elif billing.monthly_limit is not None and billing.current_month_spent + cost > billing.monthly_limit:
                reason = REASON_MONTHLY_LIMIT
            elif billing.daily_limit is not None and billing.current_day_spent + cost > billing.daily_limit:
                reason = REASON_DAILY_LIMIT

            return BillingCheck(
                can_proceed=reason is None,
                reason=reason,
                estimated_cost=cost,
                state=BillingSnapshot.from_row(billing),
            )

    def _record_sync(
        self,
        user_id: str,
        provider: str,
        model_name: str,
        input_tokens: int,
        output_tokens: int,
        conversation_id: str | None,
        endpoint: str,
        request_duration_ms: int | None,
        request_metadata: dict[str, Any] | None,
    ) -> CostBreakdown:
        with self._db.session() as session, session.begin():
            cost = _price(self._pricing_rule(session, provider, model_name), input_tokens, output_tokens)
            billing = self._get_or_create_billing(session, user_id)

            session.add(
                UsageRecord(
                    user_id=user_id,
                    conversation_id=conversation_id,
                    provider=provider,
                    model_name=model_name,
                    endpoint=endpoint,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    total_tokens=input_tokens + output_tokens,
                    input_cost=cost.input_cost,
                    output_cost=cost.output_cost,
                    total_cost=cost.total_cost,
                    request_duration_ms=request_duration_ms,
                    request_metadata=request_metadata,
                )
            )
            # Column arithmetic so concurrent commits do not lose updates
            session.execute(
                update(UserBilling)
                .where(UserBilling.id == billing.id)
                .values(
                    credits=UserBilling.credits - cost.total_cost,
                    total_spent=UserBilling.total_spent + cost.total_cost,
                    current_month_spent=UserBilling.current_month_spent + cost.total_cost,
                    current_day_spent=UserBilling.current_day_spent + cost.total_cost,
                    updated_at=utcnow(),
                )
            )
            session.add(
                BillingRecord(
                    user_id=user_id,
                    type=BillingType.CHARGE.value,
                    amount=cost.total_cost,
                    description=f"Model usage: {model_name}",
                    status=PaymentStatus.COMPLETED.value,
                    details={
                        "modelName": model_name,
                        "provider": provider,
                        "tokens": {
                            "inputTokens": input_tokens,
                            "outputTokens": output_tokens,
                            "totalTokens": input_tokens + output_tokens,
                        },
                        "conversationId": conversation_id,
                    },
                )
            )
        return cost

    # --- public API ---

    async def estimate_and_check(
        self,
        user_id: str,
        messages: list[ChatMessage],
        provider: str,
        model_name: str,
    ) -> BillingCheck:
        """
        Estimate the cost of a request and check it against the user's limits.

        Accounts that do not exist yet are created with the default plan.
        """
        check = await self._db.run(self._check_sync, user_id, messages, provider, model_name)
        if not check.can_proceed:
            logger.info(
                f"Billing check rejected user {user_id} for {provider}/{model_name}: "
                f"{check.reason} (estimated {check.estimated_cost})"
            )
        return check

    async def calculate_cost(
        self, provider: str, model_name: str, input_tokens: int, output_tokens: int
    ) -> CostBreakdown:
        def _calc() -> CostBreakdown:
            with self._db.session() as session:
                return _price(self._pricing_rule(session, provider, model_name), input_tokens, output_tokens)

        return await self._db.run(_calc)

    async def record_usage(
        self,
        user_id: str,
        provider: str,
        model_name: str,
        input_tokens: int,
        output_tokens: int,
        conversation_id: str | None = None,
        endpoint: str = "/api/chat",
        request_duration_ms: int | None = None,
        request_metadata: dict[str, Any] | None = None,
    ) -> CostBreakdown:
        """
        Price actual usage and charge it in a single transaction.

        Raises:
            SQLAlchemyError: If the transaction fails (nothing is written)
        """
        cost = await self._db.run(
            self._record_sync,
            user_id,
            provider,
            model_name,
            input_tokens,
            output_tokens,
            conversation_id,
            endpoint,
            request_duration_ms,
            request_metadata,
        )
        logger.info(
            f"Recorded usage for user {user_id}: {provider}/{model_name} "
            f"{input_tokens}+{output_tokens} tokens, cost {cost.total_cost}"
        )
        return cost

    async def get_billing(self, user_id: str) -> BillingSnapshot:
        def _get() -> BillingSnapshot:
            with self._db.session() as session, session.begin():
                return BillingSnapshot.from_row(self._get_or_create_billing(session, user_id))

        return await self._db.run(_get)

    async def add_credits(self, user_id: str, amount: Decimal, description: str) -> BillingSnapshot:
        """Top up credits and append a CREDIT record in one transaction."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        def _add() -> BillingSnapshot:
            with self._db.session() as session, session.begin():
                billing = self._get_or_create_billing(session, user_id)
                billing.credits = billing.credits + amount
                billing.updated_at = utcnow()
                session.add(
                    BillingRecord(
                        user_id=user_id,
                        type=BillingType.CREDIT.value,
                        amount=amount,
                        description=description,
                        status=PaymentStatus.COMPLETED.value,
                    )
                )
                session.flush()
                return BillingSnapshot.from_row(billing)

        return await self._db.run(_add)

    async def reset_daily_usage(self, now: datetime | None = None) -> int:
        """Zero current_day_spent for accounts last reset before today. Returns rows reset."""
        now = now or utcnow()

        def _reset() -> int:
            with self._db.session() as session, session.begin():
                result = session.execute(
                    update(UserBilling)
                    .where(UserBilling.last_reset_date < _start_of_day(now))
                    .values(current_day_spent=_ZERO, last_reset_date=now)
                )
                return result.rowcount

        count = await self._db.run(_reset)
        logger.info(f"Reset daily usage for {count} accounts")
        return count

    async def reset_monthly_usage(self, now: datetime | None = None) -> int:
        """Zero current_month_spent for accounts whose cycle started before this month."""
        now = now or utcnow()
        first_of_month = _start_of_day(now).replace(day=1)

        def _reset() -> int:
            with self._db.session() as session, session.begin():
                result = session.execute(
                    update(UserBilling)
                    .where(
                        or_(
                            UserBilling.billing_cycle.is_(None),
                            UserBilling.billing_cycle < first_of_month,
                        )
                    )
                    .values(current_month_spent=_ZERO, billing_cycle=now)
                )
                return result.rowcount

        count = await self._db.run(_reset)
        logger.info(f"Reset monthly usage for {count} accounts")
        return count

    async def usage_summary(self, user_id: str, days: int = 30) -> list[UsageSummaryRow]:
        """Usage grouped by provider and model over the last `days` days."""
        since = utcnow() - timedelta(days=days)

        def _summary() -> list[UsageSummaryRow]:
            stmt = (
                select(
                    UsageRecord.provider,
                    UsageRecord.model_name,
                    func.count(UsageRecord.id),
                    func.coalesce(func.sum(UsageRecord.input_tokens), 0),
                    func.coalesce(func.sum(UsageRecord.output_tokens), 0),
                    func.coalesce(func.sum(UsageRecord.total_tokens), 0),
                    func.coalesce(func.sum(UsageRecord.total_cost), 0),
                )
                .where(UsageRecord.user_id == user_id, UsageRecord.created_at >= since)
                .group_by(UsageRecord.provider, UsageRecord.model_name)
                .order_by(UsageRecord.provider, UsageRecord.model_name)
            )
            with self._db.session() as session:
                return [
                    UsageSummaryRow(
                        provider=provider,
                        model_name=model_name,
                        requests=requests,
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                        total_tokens=total_tokens,
                        total_cost=Decimal(str(total_cost)),
                    )
                    for provider, model_name, requests, input_tokens, output_tokens, total_tokens, total_cost
                    in session.execute(stmt)
                ]

        return await self._db.run(_summary)

    async def seed_pricing(self) -> int:
        """Create the default pricing rules that do not exist yet. Returns rules created."""

        def _seed() -> int:
            created = 0
            with self._db.session() as session, session.begin():
                for provider, model_name, input_price, output_price in DEFAULT_PRICING:
                    exists = session.scalars(
                        select(PricingRule.id).where(
                            PricingRule.provider == provider,
                            PricingRule.model_name == model_name,
                            PricingRule.is_active.is_(True),
                        )
                    ).first()
                    if exists is not None:
                        continue
                    session.add(
                        PricingRule(
                            provider=provider,
                            model_name=model_name,
                            input_token_price=Decimal(input_price),
                            output_token_price=Decimal(output_price),
                        )
                    )
                    created += 1
            return created

        created = await self._db.run(_seed)
        logger.info(f"Seeded {created} pricing rules")
        return created
