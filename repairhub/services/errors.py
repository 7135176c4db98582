"""
Domain errors for the repair lifecycle core.
Each maps onto one category of failure; all are scoped to the operation
that raised them.
"""
from typing import Optional


class RepairError(Exception):
    status_code = 400
    title = "Bad Request"
    code = "repair_error"

    def __init__(self, detail: str, code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        if code:
            self.code = code


class TransitionRejected(RepairError):
    """Status change violates forward-only ordering or a guard."""
    status_code = 409
    title = "Conflict"
    code = "transition_rejected"


class PaymentCaptureFailed(RepairError):
    """Insufficient cash, link creation failure or a failed tap callback."""
    status_code = 402
    title = "Payment Required"
    code = "payment_capture_failed"


class PersistenceFailed(RepairError):
    status_code = 503
    title = "Service Unavailable"
    code = "persistence_failed"


class LocationPermissionDenied(RepairError):
    status_code = 403
    title = "Forbidden"
    code = "location_permission_denied"


class FeedDisconnected(RepairError):
    status_code = 503
    title = "Service Unavailable"
    code = "feed_disconnected"


class RepairNotFound(RepairError):
    status_code = 404
    title = "Not Found"
    code = "repair_not_found"


class ActionForbidden(RepairError):
    """Caller is not a participant allowed to perform the action."""
    status_code = 403
    title = "Forbidden"
    code = "forbidden"
