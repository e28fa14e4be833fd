"""
Domain models for the trading ledger using Pydantic.

These models describe the four ledger records (wallet, position,
transaction, order), the validated request payloads accepted by the
services, and the read-side results returned to callers.  Records are
frozen: a state change always produces a new instance, which the store
then persists.

An order's lifecycle is modelled as a tagged union of
:class:`PendingState`, :class:`ExecutedState` and
:class:`CancelledState`, so an executed order always carries its
execution time and a cancelled or executed order cannot be moved again.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .accounting import Holding, quantize_amount, quantize_price, to_decimal
from .exceptions import InvalidOrderTransitionError, NotCancellableError, ValidationError


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# Ledger records
# ---------------------------------------------------------------------------


class Wallet(BaseModel):
    """Single-currency cash balance of one user."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    balance: Decimal
    currency: str
    created_at: datetime
    updated_at: datetime


class Position(BaseModel):
    """Holding of one coin by one user, at a weighted average cost."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    symbol: str
    coin_id: str
    amount: Decimal
    average_cost: Decimal
    created_at: datetime
    updated_at: datetime

    @property
    def holding(self) -> Holding:
        return Holding(amount=self.amount, average_cost=self.average_cost)


class Transaction(BaseModel):
    """Immutable record of one executed BUY or SELL."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    type: TradeType
    symbol: str
    coin_id: str
    amount: Decimal
    price_per_unit: Decimal
    total_value: Decimal
    fee: Decimal
    created_at: datetime


class PendingState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["PENDING"] = "PENDING"


class ExecutedState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["EXECUTED"] = "EXECUTED"
    executed_at: datetime


class CancelledState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["CANCELLED"] = "CANCELLED"


OrderState = Annotated[
    Union[PendingState, ExecutedState, CancelledState], Field(discriminator="status")
]


def order_state(status: str, executed_at: Optional[datetime] = None) -> Union[
    PendingState, ExecutedState, CancelledState
]:
    """Rebuild the tagged state from the stored ``status``/``executed_at`` columns."""
    if status == OrderStatus.PENDING.value:
        return PendingState()
    if status == OrderStatus.EXECUTED.value:
        if executed_at is None:
            raise InvalidOrderTransitionError("EXECUTED order without executed_at")
        return ExecutedState(executed_at=executed_at)
    if status == OrderStatus.CANCELLED.value:
        return CancelledState()
    raise InvalidOrderTransitionError(f"Unknown order status {status!r}")


class Order(BaseModel):
    """Conditional instruction to sell ``amount`` of a position at a trigger."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    position_id: str
    symbol: str
    coin_id: str
    order_type: OrderType
    trigger_price: Decimal
    amount: Decimal
    created_at: datetime
    state: OrderState = Field(default_factory=PendingState)

    @property
    def status(self) -> OrderStatus:
        return OrderStatus(self.state.status)

    @property
    def executed_at(self) -> Optional[datetime]:
        if isinstance(self.state, ExecutedState):
            return self.state.executed_at
        return None

    @property
    def is_pending(self) -> bool:
        return isinstance(self.state, PendingState)

    def is_triggered_by(self, price: Decimal) -> bool:
        """Return True if ``price`` crosses this order's trigger."""
        if self.order_type is OrderType.STOP_LOSS:
            return price <= self.trigger_price
        return price >= self.trigger_price

    def mark_executed(self, at: datetime) -> "Order":
        if not self.is_pending:
            raise InvalidOrderTransitionError(
                f"Order {self.id} is {self.status.value}, cannot execute",
                {"order_id": self.id, "status": self.status.value},
            )
        return self.model_copy(update={"state": ExecutedState(executed_at=at)})

    def mark_cancelled(self) -> "Order":
        if not self.is_pending:
            raise NotCancellableError(self.id, self.status.value)
        return self.model_copy(update={"state": CancelledState()})


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class _DecimalRequest(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_numbers(cls, value: Any) -> Any:
        # Floats are converted through repr so 0.1 stays 0.1.
        if isinstance(value, float):
            return to_decimal(value)
        return value


class TradeRequest(_DecimalRequest):
    """A market BUY or SELL at a caller-supplied price."""

    type: TradeType
    coin_id: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, allow_inf_nan=False)
    price_per_unit: Decimal = Field(..., gt=0, allow_inf_nan=False)

    @field_validator("amount")
    @classmethod
    def _amount_precision(cls, value: Decimal) -> Decimal:
        value = quantize_amount(value)
        if value <= 0:
            raise ValueError("amount rounds to zero at 8 decimals")
        return value

    @field_validator("price_per_unit")
    @classmethod
    def _price_precision(cls, value: Decimal) -> Decimal:
        value = quantize_price(value)
        if value <= 0:
            raise ValueError("price rounds to zero at 8 decimals")
        return value


class CreateOrderRequest(_DecimalRequest):
    """A stop-loss or take-profit against an existing position."""

    position_id: str = Field(..., min_length=1)
    order_type: OrderType
    trigger_price: Decimal = Field(..., gt=0, allow_inf_nan=False)
    amount: Decimal = Field(..., gt=0, allow_inf_nan=False)

    @field_validator("amount")
    @classmethod
    def _amount_precision(cls, value: Decimal) -> Decimal:
        value = quantize_amount(value)
        if value <= 0:
            raise ValueError("amount rounds to zero at 8 decimals")
        return value

    @field_validator("trigger_price")
    @classmethod
    def _trigger_precision(cls, value: Decimal) -> Decimal:
        value = quantize_price(value)
        if value <= 0:
            raise ValueError("trigger price rounds to zero at 8 decimals")
        return value


RequestT = TypeVar("RequestT", bound=BaseModel)


def parse_request(model: Type[RequestT], **data: Any) -> RequestT:
    """Validate ``data`` into ``model``, raising the ledger ``ValidationError``."""
    try:
        return model(**data)
    except PydanticValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in errors)
        raise ValidationError(f"Invalid {model.__name__}: {fields}", {"errors": errors}) from exc


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class TradeResult(BaseModel):
    """Outcome of an executed trade.  ``position`` is None when it was closed."""

    model_config = ConfigDict(frozen=True)

    transaction: Transaction
    new_balance: Decimal
    position: Optional[Position] = None

    @property
    def position_removed(self) -> bool:
        return self.position is None


class ValuedHolding(BaseModel):
    model_config = ConfigDict(frozen=True)

    position_id: str
    symbol: str
    coin_id: str
    amount: Decimal
    average_cost: Decimal
    current_price: Decimal
    current_value: Decimal
    cost_basis: Decimal
    profit_loss: Decimal
    profit_loss_percentage: Decimal


class PortfolioValuation(BaseModel):
    model_config = ConfigDict(frozen=True)

    holdings: List[ValuedHolding] = Field(default_factory=list)
    total_value: Decimal = Decimal("0.00")
    missing_prices: List[str] = Field(default_factory=list)


class OrderFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: str
    reason: str
    message: str


class EvaluationResult(BaseModel):
    """Report of one EvaluateTriggers pass for one user."""

    model_config = ConfigDict(frozen=True)

    checked: int = 0
    executed: List[Order] = Field(default_factory=list)
    failed: List[OrderFailure] = Field(default_factory=list)
    upstream_error: Optional[str] = None


class ReplayedPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    coin_id: str
    symbol: str
    amount: Decimal
    average_cost: Decimal


class ReconciliationReport(BaseModel):
    """Stored ledger state compared with a replay of the transaction log."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    expected_balance: Decimal
    actual_balance: Decimal
    expected_positions: Dict[str, ReplayedPosition] = Field(default_factory=dict)
    actual_positions: Dict[str, ReplayedPosition] = Field(default_factory=dict)
    realized_pnl: Decimal = Decimal("0.00")
    discrepancies: List[str] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies


class CoinQuote(BaseModel):
    """Market listing entry from the market-data source."""

    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    name: str
    current_price: Decimal
    price_change_percentage_24h: Decimal = Decimal("0")
    market_cap: Decimal = Decimal("0")
    image: Optional[str] = None
