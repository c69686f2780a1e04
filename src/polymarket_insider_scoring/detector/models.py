"""Data models shared by the detector components."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from web3 import Web3

logger = logging.getLogger(__name__)


class DetectorError(Exception):
    """Base exception for detector programmer errors."""


class TrackerClosedError(DetectorError):
    """Raised when a component is used after ``close()``."""


class Severity(str, Enum):
    """Alert severity, ordered from least to most severe."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Return the position of this severity in the ordering."""
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def highest(cls, *severities: Severity | None) -> Severity | None:
        """Return the most severe of the given values, ignoring None."""
        present = [s for s in severities if s is not None]
        if not present:
            return None
        return max(present, key=lambda s: s.rank)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class SpikeDirection(str, Enum):
    """Direction of a volume spike relative to baseline."""

    UP = "UP"
    DOWN = "DOWN"


class PositionOutcome(str, Enum):
    """Outcome of a resolved position."""

    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"


class OutcomeType(str, Enum):
    """Ground truth for a previously scored wallet."""

    TRUE_POSITIVE = "TRUE_POSITIVE"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    TRUE_NEGATIVE = "TRUE_NEGATIVE"
    FALSE_NEGATIVE = "FALSE_NEGATIVE"
    UNKNOWN = "UNKNOWN"

    @property
    def is_known(self) -> bool:
        """Return True once ground truth has been determined."""
        return self is not OutcomeType.UNKNOWN

    @property
    def is_actual_positive(self) -> bool:
        """Return True if the wallet really was suspicious."""
        return self in (OutcomeType.TRUE_POSITIVE, OutcomeType.FALSE_NEGATIVE)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime:
    """Return an aware datetime; naive values are taken to be UTC, None is now."""
    if value is None:
        return utc_now()
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def normalize_address(address: str | None) -> str | None:
    """Validate and lower-case a wallet address.

    Args:
        address: Raw wallet address from an upstream collaborator.

    Returns:
        Lower-cased address, or None if the value is not an address.
    """
    if not address or not isinstance(address, str):
        return None
    candidate = address.strip().lower()
    if not Web3.is_address(candidate):
        return None
    return candidate


def normalize_market_id(market_id: str | None) -> str | None:
    """Return a case-normalized market id, or None if empty."""
    if not market_id or not isinstance(market_id, str):
        return None
    normalized = market_id.strip().lower()
    return normalized or None


@dataclass(frozen=True)
class VolumeSample:
    """A single volume observation for a market.

    Attributes:
        market_id: Normalized market identifier.
        volume: Traded volume in the sample interval (never negative).
        timestamp: When the sample was taken.
        trade_count: Number of trades aggregated into the sample.
    """

    market_id: str
    volume: float
    timestamp: datetime
    trade_count: int = 1

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "market_id": self.market_id,
            "volume": self.volume,
            "timestamp": self.timestamp.isoformat(),
            "trade_count": self.trade_count,
        }


@dataclass(frozen=True)
class Trade:
    """A normalized trade supplied by the ingestion layer.

    Attributes:
        trade_id: Unique trade identifier.
        market_id: Market the trade executed in.
        wallet_address: Trader's wallet address.
        size_usd: Notional trade size in USD.
        price: Execution price (0-1 for binary markets).
        side: BUY or SELL.
        timestamp: Execution time.
        outcome: Outcome token traded, if known.
    """

    trade_id: str
    market_id: str
    wallet_address: str
    size_usd: float
    price: float = 0.0
    side: str = "BUY"
    timestamp: datetime = field(default_factory=utc_now)
    outcome: str = ""

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-safe dictionary."""
        return {
            "trade_id": self.trade_id,
            "market_id": self.market_id,
            "wallet_address": self.wallet_address,
            "size_usd": self.size_usd,
            "price": self.price,
            "side": self.side,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome,
        }


@dataclass(frozen=True)
class ResolvedPosition:
    """A closed position with a known result.

    Attributes:
        position_id: Unique id; re-submitting the same id replaces the record.
        wallet_address: Owner of the position.
        market_id: Market the position was held in.
        category: Market category, e.g. "politics".
        outcome: WIN, LOSS or BREAKEVEN.
        size_usd: Position size in USD.
        realized_pnl: Realized profit (negative for a loss).
        roi: Return on investment as a fraction.
        is_high_conviction: Whether the position was sized as a conviction bet.
        entry_ts: When the position was opened.
        exit_ts: When the position resolved.
        time_to_resolution_hours: Hours between entry and market resolution.
    """

    position_id: str
    wallet_address: str
    market_id: str
    category: str
    outcome: PositionOutcome
    size_usd: float
    realized_pnl: float
    roi: float
    is_high_conviction: bool
    entry_ts: datetime
    exit_ts: datetime
    time_to_resolution_hours: float | None = None

    @property
    def is_win(self) -> bool:
        """Return True if the position was a win."""
        return self.outcome is PositionOutcome.WIN

    @property
    def is_loss(self) -> bool:
        """Return True if the position was a loss."""
        return self.outcome is PositionOutcome.LOSS
