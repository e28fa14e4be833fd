"""
Exception hierarchy for the trading ledger.

Every error raised by the executor, the order engine and the store
derives from :class:`LedgerError` and carries a ``details`` dict that
callers can serialise into a response body.  Ledger-mutating errors are
always raised before the SQL transaction commits, so catching one means
the wallet, positions, transactions and orders are exactly as they were.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, "details": self.details}


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input, rejected before any state access."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(LedgerError):
    """A wallet, position or order is absent or not owned by the caller."""


class WalletNotFoundError(NotFoundError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"Wallet not found for user {user_id}", {"user_id": user_id})
        self.user_id = user_id


class NoSuchPositionError(NotFoundError):
    """Raised by a SELL when the user holds no position in the coin."""

    def __init__(self, user_id: str, coin_id: str) -> None:
        super().__init__(
            f"User {user_id} holds no {coin_id}", {"user_id": user_id, "coin_id": coin_id}
        )
        self.user_id = user_id
        self.coin_id = coin_id


class PositionNotFoundError(NotFoundError):
    """Raised when an order references a position the user does not own."""

    def __init__(self, user_id: str, position_id: str) -> None:
        super().__init__(
            f"Position {position_id} not found",
            {"user_id": user_id, "position_id": position_id},
        )
        self.position_id = position_id


# ---------------------------------------------------------------------------
# Business rules
# ---------------------------------------------------------------------------


class InsufficientFundsError(LedgerError):
    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__(
            f"Insufficient funds: required {required}, available {available}",
            {"required": str(required), "available": str(available)},
        )
        self.required = required
        self.available = available


class InsufficientHoldingsError(LedgerError):
    def __init__(self, symbol: str, requested: Decimal, held: Decimal) -> None:
        super().__init__(
            f"Insufficient holdings: requested {requested} {symbol}, held {held}",
            {"symbol": symbol, "requested": str(requested), "held": str(held)},
        )
        self.requested = requested
        self.held = held


class AmountExceedsHoldingsError(LedgerError):
    def __init__(self, position_id: str, requested: Decimal, held: Decimal) -> None:
        super().__init__(
            f"Order amount {requested} exceeds holdings {held}",
            {"position_id": position_id, "requested": str(requested), "held": str(held)},
        )
        self.requested = requested
        self.held = held


class NotCancellableError(LedgerError):
    """The order does not exist for this user or is no longer PENDING."""

    def __init__(self, order_id: str, status: Optional[str] = None) -> None:
        message = f"Order {order_id} cannot be cancelled"
        if status:
            message = f"{message} (status {status})"
        super().__init__(message, {"order_id": order_id, "status": status})
        self.order_id = order_id
        self.status = status


class InvalidOrderTransitionError(LedgerError):
    """An order left a terminal state or skipped PENDING."""


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class ConflictError(LedgerError):
    """A concurrent writer changed a row between read and compare-and-set."""


class UpstreamUnavailableError(LedgerError):
    """The market-data source failed or timed out."""
