from .account_subscription import AccountSubscription
from .applied_event import AppliedEvent

__all__ = ["AccountSubscription", "AppliedEvent"]
