# account_subscription.py
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Index

from ..billing.domain import Billing, PlanTier, SubscriptionState, SubscriptionStatus
from ..extensions import db
from ..utils.timeutils import as_utc


def _utcnow():
    return datetime.now(timezone.utc)


class AccountSubscription(db.Model):
    """
    One subscription record per account.

    Rows are created as free/inactive and are never deleted; the state machine
    is the only writer, through ``SubscriptionStore.put``.
    """

    __tablename__ = "account_subscriptions"

    account_id = db.Column(db.String(64), primary_key=True)

    plan = db.Column(db.String(16), nullable=False, default=PlanTier.FREE.value)
    status = db.Column(db.String(16), nullable=False, default=SubscriptionStatus.INACTIVE.value, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False, index=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    period_end_estimated = db.Column(db.Boolean, nullable=False, default=False)

    # Stripe references
    provider_subscription_id = db.Column(db.String(255), nullable=True, index=True)
    provider_customer_id = db.Column(db.String(255), nullable=True, index=True)
    ended_subscription_id = db.Column(db.String(255), nullable=True)

    trial_end = db.Column(db.DateTime(timezone=True), nullable=True)

    # Display only
    billing_amount = db.Column(db.BigInteger, nullable=True)
    billing_currency = db.Column(db.String(3), nullable=True)
    billing_interval = db.Column(db.String(20), nullable=True)

    # Ordering / concurrency
    last_applied_event_id = db.Column(db.String(255), nullable=True)
    last_event_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "plan IN ('free', 'tier1', 'tier2', 'tier3')",
            name="valid_account_plan",
        ),
        CheckConstraint(
            "status IN ('inactive', 'trialing', 'active', 'past_due', 'canceled')",
            name="valid_account_status",
        ),
        Index("idx_account_sub_sweep", "cancel_at_period_end", "current_period_end"),
    )

    def to_state(self) -> SubscriptionState:
        return SubscriptionState(
            account_id=self.account_id,
            plan=PlanTier(self.plan),
            status=SubscriptionStatus(self.status),
            cancel_at_period_end=bool(self.cancel_at_period_end),
            current_period_end=as_utc(self.current_period_end),
            period_end_estimated=bool(self.period_end_estimated),
            provider_subscription_id=self.provider_subscription_id,
            provider_customer_id=self.provider_customer_id,
            ended_subscription_id=self.ended_subscription_id,
            trial_end=as_utc(self.trial_end),
            billing=Billing(
                amount=self.billing_amount,
                currency=self.billing_currency,
                interval=self.billing_interval,
            ),
            last_applied_event_id=self.last_applied_event_id,
            last_event_at=as_utc(self.last_event_at),
            version=self.version or 0,
        )

    @staticmethod
    def columns_from_state(state: SubscriptionState) -> dict:
        """Column values for an UPDATE, excluding the key and the version counter."""
        return {
            "plan": state.plan.value,
            "status": state.status.value,
            "cancel_at_period_end": state.cancel_at_period_end,
            "current_period_end": state.current_period_end,
            "period_end_estimated": state.period_end_estimated,
            "provider_subscription_id": state.provider_subscription_id,
            "provider_customer_id": state.provider_customer_id,
            "ended_subscription_id": state.ended_subscription_id,
            "trial_end": state.trial_end,
            "billing_amount": state.billing.amount,
            "billing_currency": state.billing.currency,
            "billing_interval": state.billing.interval,
            "last_applied_event_id": state.last_applied_event_id,
            "last_event_at": state.last_event_at,
        }

    def __repr__(self) -> str:
        return f"<AccountSubscription {self.account_id} {self.plan}/{self.status} v{self.version}>"
