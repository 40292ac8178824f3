"""
Exception Handler Module
Deal lifecycle error taxonomy and the fatal-error audit decorator
"""

import logging
import functools
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class DealErrorKind(Enum):
    INVARIANT_VIOLATION = "InvariantViolation"
    STALE_STATE = "StaleState"
    USER_HAS_ACTIVE_DEAL = "UserHasActiveDeal"
    USER_BLACKLISTED = "UserBlacklisted"
    WALLET_INVALID = "WalletInvalid"
    BLOCKCHAIN_UNAVAILABLE = "BlockchainUnavailable"
    DEPOSIT_INSUFFICIENT = "DepositInsufficient"
    DISPUTE_ALREADY_EXISTS = "DisputeAlreadyExists"
    COMMENT_LIMIT = "CommentLimit"
    NOT_AUTHORIZED = "NotAuthorized"
    CONFLICT = "Conflict"


class DealError(Exception):
    """Base class for errors surfaced by the deal lifecycle core"""

    kind = DealErrorKind.INVARIANT_VIOLATION
    # Caller may re-read and retry; no state was changed
    recoverable = False
    # Aborts the operation and leaves an audit entry
    fatal = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvariantViolation(DealError):
    """Input fails a pre-condition (amount, deadline, self-deal, ...)"""
    kind = DealErrorKind.INVARIANT_VIOLATION
    fatal = True


class DealNotFound(InvariantViolation):
    def __init__(self, deal_id: str):
        self.deal_id = deal_id
        super().__init__(f"Deal {deal_id} not found")


class DisputeNotFound(InvariantViolation):
    def __init__(self, dispute_ref: Any):
        self.dispute_ref = dispute_ref
        super().__init__(f"Dispute {dispute_ref} not found")


class StaleState(DealError):
    kind = DealErrorKind.STALE_STATE
    recoverable = True


class UserHasActiveDeal(DealError):
    kind = DealErrorKind.USER_HAS_ACTIVE_DEAL

    def __init__(self, user_id: int, active_deal_id: Optional[str] = None):
        self.user_id = user_id
        self.active_deal_id = active_deal_id
        super().__init__(f"User {user_id} already has an active deal {active_deal_id or ''}".strip())


class UserBlacklisted(DealError):
    kind = DealErrorKind.USER_BLACKLISTED

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User {user_id} is blacklisted")


class WalletInvalid(DealError):
    """Wallet verification failed; reason is not_found, api_error or bad_format"""
    kind = DealErrorKind.WALLET_INVALID
    recoverable = True

    REASONS = ("not_found", "api_error", "bad_format")

    def __init__(self, reason: str, address: Optional[str] = None):
        if reason == "invalid_format":
            reason = "bad_format"
        if reason not in self.REASONS:
            reason = "api_error"
        self.reason = reason
        self.address = address
        super().__init__(f"Wallet {address} rejected: {reason}")


class BlockchainUnavailable(DealError):
    """Transient blockchain collaborator failure or timeout"""
    kind = DealErrorKind.BLOCKCHAIN_UNAVAILABLE
    recoverable = True


class DepositInsufficient(DealError):
    kind = DealErrorKind.DEPOSIT_INSUFFICIENT

    def __init__(self, expected: Decimal, received: Decimal):
        self.expected = expected
        self.received = received
        super().__init__(f"Deposit of {received} is below the deal amount {expected}")


class DisputeAlreadyExists(DealError):
    kind = DealErrorKind.DISPUTE_ALREADY_EXISTS


class CommentLimit(DealError):
    kind = DealErrorKind.COMMENT_LIMIT


class NotAuthorized(DealError):
    kind = DealErrorKind.NOT_AUTHORIZED


class Conflict(DealError):
    """Target state not reachable from the current state"""
    kind = DealErrorKind.CONFLICT

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Transition {current} -> {target} is not allowed")


def _deal_ref(args: tuple, kwargs: dict) -> Optional[str]:
    deal_id = kwargs.get("deal_id")
    if deal_id is None and args and isinstance(args[0], str):
        deal_id = args[0]
    return deal_id


def audit_fatal_errors(func: Callable) -> Callable:
    """
    Decorator for lifecycle operations.
    Fatal errors (invariant violations, unexpected persistence failures) are
    recorded in the audit trail through a separate session, then re-raised.
    Expects the decorated method's instance to expose an `audit` AuditLogger.
    """

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs) -> Any:
        try:
            return await func(self, *args, **kwargs)
        except DealError as e:
            if e.fatal:
                await _record_failure(self, func.__name__, e.kind.value, e.message, args, kwargs)
            raise
        except SQLAlchemyError as e:
            logger.error(f"❌ PERSISTENCE_FAILURE in {func.__name__}: {type(e).__name__}: {e}")
            await _record_failure(self, func.__name__, "PersistenceFailure", str(e), args, kwargs)
            raise

    return wrapper


async def _record_failure(owner, operation: str, kind: str, message: str, args: tuple, kwargs: dict):
    audit = getattr(owner, "audit", None)
    deal_id = _deal_ref(args, kwargs)
    logger.error(f"❌ OPERATION_FAILED: {operation} deal={deal_id} {kind}: {message}")
    if audit is None:
        return
    try:
        await audit.record_detached(
            "operation_failed",
            entity_type="deal" if deal_id else "operation",
            entity_id=deal_id or operation,
            deal_id=deal_id,
            description=message,
            extra_data={"operation": operation, "error_kind": kind},
        )
    except SQLAlchemyError as audit_error:
        logger.error(f"❌ AUDIT_WRITE_FAILED for {operation}: {audit_error}")
