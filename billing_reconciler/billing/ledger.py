import logging
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError

from ..errors import EventAlreadyApplied
from ..models.applied_event import AppliedEvent
from ..utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """
    Records which provider events have been applied.

    ``mark_applied`` is a plain INSERT on the event id primary key and is
    flushed in the caller's transaction, next to the state write. Two racing
    deliveries of the same event cannot both commit: the loser gets
    ``EventAlreadyApplied`` and must roll back.
    """

    def __init__(self, session):
        self.session = session

    def has_been_applied(self, event_id: str) -> bool:
        found = self.session.execute(
            select(AppliedEvent.event_id).where(AppliedEvent.event_id == event_id)
        ).first()
        return found is not None

    def mark_applied(
        self,
        event_id: str,
        account_id: Optional[str],
        event_type: str,
        verified: bool = True,
    ) -> None:
        try:
            self.session.execute(
                insert(AppliedEvent).values(
                    event_id=event_id,
                    account_id=account_id,
                    event_type=event_type,
                    verified=verified,
                    applied_at=utcnow(),
                )
            )
        except IntegrityError as exc:
            logger.info(
                "Event already recorded in ledger",
                extra={"event_id": event_id, "event_type": event_type},
            )
            raise EventAlreadyApplied(f"Event {event_id} already applied") from exc

    def get(self, event_id: str) -> Optional[AppliedEvent]:
        return self.session.get(AppliedEvent, event_id)
