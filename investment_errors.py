"""
Investment engine error taxonomy.

Business-rule failures are raised as one of these and surfaced to the caller;
routers translate them into HTTP status codes.
"""

from typing import Optional


class InvestmentEngineError(Exception):
    """Base class for every error raised by the investment engine"""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(InvestmentEngineError):
    """Property, transaction, document or distribution does not exist"""
    status_code = 404


class InvalidStateTransition(InvestmentEngineError):
    """Transition attempted from the wrong source state"""
    status_code = 409

    def __init__(self, message: str, current_status: Optional[str] = None, target_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status
        self.target_status = target_status


class InsufficientInventory(InvestmentEngineError):
    """Requested shares are no longer available; caller should re-quote"""
    status_code = 409

    def __init__(self, message: str, requested: Optional[int] = None, available: Optional[int] = None):
        super().__init__(message)
        self.requested = requested
        self.available = available


class IneligibleInvestor(InvestmentEngineError):
    """Investor failed an eligibility rule; reason is user-facing"""
    status_code = 403

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class NoActiveInvestments(InvestmentEngineError):
    """Distribution attempted on a property without qualifying owners"""
    status_code = 422


class StoreUnavailable(InvestmentEngineError):
    """Persistent store failure; callers retry with backoff"""
    status_code = 503


class InvalidSettingValue(InvestmentEngineError):
    """Platform setting value rejected before it was stored"""
    status_code = 422
