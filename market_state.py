"""Rolling per-instrument market state.

The store keeps a bounded candle buffer and the two most recent order-book
snapshots for every tracked instrument.  Everything runs on the event loop
thread so no locking is needed; the analysis cycle works on the immutable
:class:`InstrumentSnapshot` returned by :meth:`MarketStateStore.snapshot` so
that stream updates arriving mid-cycle cannot change its inputs.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from log_utils import setup_logger

logger = setup_logger(__name__)

PriceLevel = Tuple[float, float]


@dataclass(frozen=True)
class Candle:
    """OHLCV bar keyed by its period open time in milliseconds."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_rest(cls, row: Sequence[Any]) -> "Candle":
        """Build from a ``GET /api/v3/klines`` row."""

        return cls(
            open_time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )

    @classmethod
    def from_kline_payload(cls, kline: Mapping[str, Any]) -> "Candle":
        """Build from the ``k`` object of a kline stream event."""

        return cls(
            open_time=int(kline["t"]),
            open=float(kline["o"]),
            high=float(kline["h"]),
            low=float(kline["l"]),
            close=float(kline["c"]),
            volume=float(kline["v"]),
        )


def parse_kline_event(message: Mapping[str, Any]) -> Tuple[Candle, bool]:
    """Return ``(candle, is_closed)`` from a kline stream message."""

    kline = message["k"]
    return Candle.from_kline_payload(kline), bool(kline.get("x", False))


def _normalise_side(levels: Iterable[Sequence[Any]], descending: bool) -> Tuple[PriceLevel, ...]:
    merged: Dict[float, float] = {}
    for level in levels:
        try:
            price = float(level[0])
            qty = float(level[1])
        except (TypeError, ValueError, IndexError):
            continue
        if price <= 0 or qty <= 0:
            continue
        # Last quote for a price wins.
        merged[price] = qty
    return tuple(sorted(merged.items(), key=lambda item: item[0], reverse=descending))


@dataclass(frozen=True)
class OrderBookSnapshot:
    """Top-of-book depth with bids descending and asks ascending."""

    bids: Tuple[PriceLevel, ...] = ()
    asks: Tuple[PriceLevel, ...] = ()
    captured_at: float = 0.0

    @classmethod
    def from_levels(
        cls,
        bids: Iterable[Sequence[Any]],
        asks: Iterable[Sequence[Any]],
        captured_at: Optional[float] = None,
    ) -> "OrderBookSnapshot":
        return cls(
            bids=_normalise_side(bids, descending=True),
            asks=_normalise_side(asks, descending=False),
            captured_at=time.time() if captured_at is None else float(captured_at),
        )

    @classmethod
    def from_depth_payload(cls, message: Mapping[str, Any]) -> "OrderBookSnapshot":
        """Build from a partial-depth stream message or a REST depth snapshot."""

        bids = message.get("bids", message.get("b", []))
        asks = message.get("asks", message.get("a", []))
        return cls.from_levels(bids, asks)

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def is_empty(self) -> bool:
        return not self.bids and not self.asks


@dataclass(frozen=True)
class InstrumentSnapshot:
    """Immutable view of one instrument handed to the analysis cycle."""

    symbol: str
    candles: Tuple[Candle, ...]
    order_book: Optional[OrderBookSnapshot]
    previous_order_book: Optional[OrderBookSnapshot]
    last_candle_closed: bool = False

    @property
    def current_price(self) -> Optional[float]:
        return self.candles[-1].close if self.candles else None


@dataclass
class InstrumentState:
    """Mutable rolling state for one instrument."""

    symbol: str
    capacity: int
    candles: Deque[Candle] = field(init=False)
    order_book: Optional[OrderBookSnapshot] = None
    previous_order_book: Optional[OrderBookSnapshot] = None
    last_analysis_at: Optional[float] = None
    last_candle_closed: bool = False

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be positive")
        self.candles = deque(maxlen=self.capacity)

    def apply_candle(self, candle: Candle, is_closed: bool) -> None:
        tail = self.candles[-1] if self.candles else None
        if tail is None or candle.open_time > tail.open_time:
            # A newer period, closed or still forming, opens a new slot so open_time
            # stays strictly increasing; deque(maxlen) evicts the oldest entry.
            self.candles.append(candle)
        elif candle.open_time == tail.open_time:
            self.candles[-1] = candle
        else:
            logger.debug(
                "Dropping stale candle for %s (open_time %s < %s)",
                self.symbol,
                candle.open_time,
                tail.open_time,
            )
            return
        self.last_candle_closed = is_closed

    def apply_depth(self, snapshot: OrderBookSnapshot) -> None:
        self.previous_order_book = self.order_book
        self.order_book = snapshot

    def snapshot(self) -> InstrumentSnapshot:
        return InstrumentSnapshot(
            symbol=self.symbol,
            candles=tuple(self.candles),
            order_book=self.order_book,
            previous_order_book=self.previous_order_book,
            last_candle_closed=self.last_candle_closed,
        )


class MarketStateStore:
    """Holds :class:`InstrumentState` for every tracked symbol."""

    def __init__(self, symbols: Iterable[str], capacity: int = 120) -> None:
        self.capacity = int(capacity)
        self._states: Dict[str, InstrumentState] = {
            symbol.upper(): InstrumentState(symbol.upper(), self.capacity) for symbol in symbols
        }

    @property
    def symbols(self) -> List[str]:
        return list(self._states)

    def get(self, symbol: str) -> InstrumentState:
        return self._states[symbol.upper()]

    def drop(self, symbol: str) -> None:
        self._states.pop(symbol.upper(), None)

    def seed_candles(self, symbol: str, candles: Iterable[Candle]) -> None:
        """Replace the buffer with historical candles, keeping the newest ``capacity``."""

        state = self.get(symbol)
        ordered = sorted(candles, key=lambda c: c.open_time)
        state.candles.clear()
        for candle in ordered:
            state.apply_candle(candle, is_closed=True)
        # The newest REST kline is the period still forming.
        state.last_candle_closed = False

    def apply_candle_event(self, symbol: str, candle: Candle, is_closed: bool) -> None:
        self.get(symbol).apply_candle(candle, is_closed)

    def apply_depth_event(self, symbol: str, snapshot: OrderBookSnapshot) -> None:
        self.get(symbol).apply_depth(snapshot)

    def mark_analysed(self, symbol: str, timestamp: Optional[float] = None) -> None:
        self.get(symbol).last_analysis_at = time.time() if timestamp is None else timestamp

    def snapshot(self, symbol: str) -> InstrumentSnapshot:
        return self.get(symbol).snapshot()


__all__ = [
    "Candle",
    "InstrumentSnapshot",
    "InstrumentState",
    "MarketStateStore",
    "OrderBookSnapshot",
    "parse_kline_event",
]
