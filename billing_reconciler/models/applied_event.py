from datetime import datetime, timezone

from ..extensions import db


def _utcnow():
    return datetime.now(timezone.utc)


class AppliedEvent(db.Model):
    """Idempotency ledger entry. Inserted once per provider event id, never updated."""

    __tablename__ = "applied_events"

    event_id = db.Column(db.String(255), primary_key=True)
    account_id = db.Column(db.String(64), nullable=True, index=True)
    event_type = db.Column(db.String(255), nullable=False)
    verified = db.Column(db.Boolean, nullable=False, default=True)
    applied_at = db.Column(db.DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AppliedEvent {self.event_id} {self.event_type}>"
