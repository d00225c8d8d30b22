import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from .domain import PlanTier, SubscriptionState, SubscriptionStatus
from ..errors import ConcurrentUpdate
from ..models.account_subscription import AccountSubscription

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """
    Persistence for AccountSubscription rows.

    Writes are optimistic: ``put`` only succeeds when the row still carries
    the version the caller read. Transaction boundaries belong to the caller
    (``commit`` / ``rollback``).
    """

    def __init__(self, session):
        self.session = session

    # ============ READS ============

    def _load(self, account_id: str) -> Optional[AccountSubscription]:
        return self.session.get(AccountSubscription, account_id, populate_existing=True)

    def get(self, account_id: str) -> Optional[SubscriptionState]:
        row = self._load(account_id)
        return row.to_state() if row is not None else None

    def get_or_create(self, account_id: str) -> SubscriptionState:
        """Return the account's record, provisioning a free/inactive one if needed."""
        row = self._load(account_id)
        if row is not None:
            return row.to_state()

        row = AccountSubscription(
            account_id=account_id,
            plan=PlanTier.FREE.value,
            status=SubscriptionStatus.INACTIVE.value,
            cancel_at_period_end=False,
            period_end_estimated=False,
            version=0,
        )
        self.session.add(row)
        try:
            self.session.flush()
        except IntegrityError:
            # Provisioned concurrently
            self.session.rollback()
            row = self._load(account_id)
            if row is None:
                raise
            return row.to_state()

        logger.info("Provisioned subscription record", extra={"account_id": account_id})
        return row.to_state()

    def find_by_customer(self, customer_id: Optional[str]) -> Optional[SubscriptionState]:
        if not customer_id:
            return None
        row = self.session.execute(
            select(AccountSubscription)
            .where(AccountSubscription.provider_customer_id == customer_id)
            .order_by(AccountSubscription.updated_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        return row.to_state() if row is not None else None

    def find_by_subscription(self, subscription_id: Optional[str]) -> Optional[SubscriptionState]:
        if not subscription_id:
            return None
        row = self.session.execute(
            select(AccountSubscription)
            .where(AccountSubscription.provider_subscription_id == subscription_id)
            .limit(1)
        ).scalar_one_or_none()
        return row.to_state() if row is not None else None

    def find_lapsed(self, now: datetime) -> List[str]:
        """Accounts whose scheduled cancellation date has passed."""
        return list(
            self.session.execute(
                select(AccountSubscription.account_id).where(
                    AccountSubscription.cancel_at_period_end.is_(True),
                    AccountSubscription.current_period_end.is_not(None),
                    AccountSubscription.current_period_end < now,
                )
            ).scalars()
        )

    def find_reconcilable(self) -> List[str]:
        """Accounts that reference a live provider subscription."""
        return list(
            self.session.execute(
                select(AccountSubscription.account_id)
                .where(AccountSubscription.provider_subscription_id.is_not(None))
                .order_by(AccountSubscription.account_id)
            ).scalars()
        )

    # ============ WRITES ============

    def put(self, account_id: str, state: SubscriptionState, expected_version: int) -> SubscriptionState:
        """
        Compare-and-swap write.

        Raises ConcurrentUpdate when another writer bumped the version first.
        """
        result = self.session.execute(
            update(AccountSubscription)
            .where(
                AccountSubscription.account_id == account_id,
                AccountSubscription.version == expected_version,
            )
            .values(
                version=expected_version + 1,
                **AccountSubscription.columns_from_state(state),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "Optimistic write lost the race",
                extra={"account_id": account_id, "expected_version": expected_version},
            )
            raise ConcurrentUpdate(f"Subscription record for {account_id} changed concurrently")

        return self.get(account_id)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
