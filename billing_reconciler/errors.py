"""
Error taxonomy for the reconciliation engine.

Trust errors reject an inbound event before any state is touched. Domain
errors are reported to the caller of a user action and never retried.
Transient errors are retried on the pull/admin paths and swallowed at the
webhook boundary.
"""


class ReconcilerError(Exception):
    code = "RECONCILER_ERROR"

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or self.__class__.__doc__ or self.code


# ==================== TRUST ERRORS ====================

class VerificationError(ReconcilerError):
    """Webhook could not be verified"""
    code = "VERIFICATION_FAILED"


class BadSignature(VerificationError):
    """Webhook signature does not match"""
    code = "BAD_SIGNATURE"


class MalformedPayload(VerificationError):
    """Webhook payload is not a valid event"""
    code = "MALFORMED_PAYLOAD"


# ==================== DOMAIN ERRORS ====================

class DomainError(ReconcilerError):
    """Action not permitted"""
    code = "ACTION_NOT_PERMITTED"


class InvalidTransition(DomainError):
    """Requested subscription change is not allowed in the current state"""
    code = "INVALID_TRANSITION"


class PlanNotAvailable(DomainError):
    """Requested plan is not available"""
    code = "PLAN_NOT_AVAILABLE"


class AccountNotFound(DomainError):
    """No subscription record exists for this account"""
    code = "ACCOUNT_NOT_FOUND"


# ==================== TRANSIENT ERRORS ====================

class TransientError(ReconcilerError):
    """Temporary failure, try again"""
    code = "TRY_AGAIN"


class ProviderUnavailable(TransientError):
    """Billing provider could not be reached"""
    code = "PROVIDER_UNAVAILABLE"


class ActionNotCompleted(TransientError):
    """The billing provider did not confirm the action"""
    code = "ACTION_NOT_COMPLETED"


class ConcurrentUpdate(TransientError):
    """Subscription record was modified concurrently"""
    code = "CONCURRENT_UPDATE"


class SweepAlreadyRunning(TransientError):
    """A subscription sweep is already in progress"""
    code = "SWEEP_IN_PROGRESS"


# ==================== PROVIDER / LEDGER ====================

class ProviderError(ReconcilerError):
    """Billing provider rejected the request"""
    code = "PROVIDER_ERROR"


class SubscriptionNotFound(ProviderError):
    """Subscription no longer exists at the billing provider"""
    code = "SUBSCRIPTION_NOT_FOUND"


class EventAlreadyApplied(ReconcilerError):
    """Event id is already recorded in the ledger"""
    code = "EVENT_ALREADY_APPLIED"
