"""Orchestration for the real-time signal engine.

:class:`SignalEngine` wires the pieces together: exchange metadata and
history are loaded through the rate-limited queue, kline and depth streams
feed the :class:`market_state.MarketStateStore`, and a periodic analysis
cycle runs the candle and depth analyzers, the fusion cascade and the price
planner for every instrument concurrently.  Non-neutral results are handed
to the notifier.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from binance_rest import REQUEST_WEIGHTS, BinanceRestClient, SymbolRules, parse_exchange_info
from candle_analyzer import CandleAnalysis, CandleAnalyzer
from config import EngineSettings, load_engine_settings
from log_utils import setup_logger
from market_state import Candle, MarketStateStore, OrderBookSnapshot, parse_kline_event
from market_stream import BinanceStreamManager, ShutdownToken, StreamKind
from microstructure import DepthSignals, OrderBookAnalysis, OrderBookAnalyzer
from notifier import SignalNotifier
from observability import log_event, timed
from price_planner import PricePlan, PricePlanner
from rate_limiter import RateLimitedQueue
from signal_fusion import Directive, SignalFusion

logger = setup_logger(__name__)


class FatalStartupError(RuntimeError):
    """The engine cannot run without exchange metadata or tradable symbols."""


@dataclass(frozen=True)
class AnalysisResult:
    symbol: str
    current_price: float
    directive: Directive
    fusion_rule: Optional[str]
    indicators: CandleAnalysis
    depth: Optional[OrderBookAnalysis]
    price_plan: PricePlan
    candle_closed: bool
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        depth = self.depth.signals if self.depth is not None else None
        return {
            "symbol": self.symbol,
            "current_price": self.current_price,
            "directive": self.directive.value,
            "fusion_rule": self.fusion_rule,
            "indicators": self.indicators.to_dict(),
            "depth_signal": depth.composite.value if depth else None,
            "depth_rule": depth.composite_rule if depth else None,
            "imbalance": self.depth.metrics.imbalance if self.depth is not None else None,
            "price_plan": self.price_plan.to_dict(),
            "candle_closed": self.candle_closed,
            "timestamp": self.timestamp,
        }


class SignalEngine:
    """Boot, stream and analyse the configured instruments."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        rest: Optional[BinanceRestClient] = None,
        queue: Optional[RateLimitedQueue] = None,
        stream: Optional[BinanceStreamManager] = None,
        notifier: Optional[SignalNotifier] = None,
        connector: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.settings = settings or load_engine_settings()
        s = self.settings
        self.rest = rest or BinanceRestClient()
        self.queue = queue or RateLimitedQueue(
            interval_ms=s.queue.interval_ms,
            max_weight=s.queue.max_weight,
            max_concurrent=s.queue.max_concurrent,
        )
        if stream is None:
            options: Dict[str, Any] = {}
            if connector is not None:
                options["connector"] = connector
            stream = BinanceStreamManager(
                self.queue,
                self.rest,
                ws_base_url=s.ws_base_url,
                kline_interval=s.timeframe,
                depth_levels=s.depth.depth_levels,
                reconnect_delay=s.reconnect_delay,
                token=ShutdownToken(),
                **options,
            )
        self.stream = stream
        self.token = stream.token
        self.store = MarketStateStore(s.symbols, s.max_candles)
        self.candle_analyzer = CandleAnalyzer(s.indicators, s.timeframe)
        self.depth_analyzer = OrderBookAnalyzer(s.depth)
        self.fusion = SignalFusion(s.risk)
        self.planner = PricePlanner(s.risk)
        self.notifier = notifier or SignalNotifier(s.alert_signals, s.alert_cooldown)
        self.symbol_rules: Dict[str, SymbolRules] = {}
        self._subscribed = False

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Load metadata and history, then open every stream.

        Raises
        ------
        FatalStartupError
            When exchange metadata cannot be fetched or no configured symbol
            is tradable.
        """

        try:
            info = await self.stream.request(
                self.rest.get_exchange_info, weight=REQUEST_WEIGHTS["exchange_info"]
            )
        except Exception as exc:
            raise FatalStartupError(f"failed to load exchange metadata: {exc}") from exc
        if self._stopping("metadata"):
            return
        self.symbol_rules = parse_exchange_info(info)

        for symbol in self.store.symbols:
            rules = self.symbol_rules.get(symbol)
            if rules is None or not rules.is_trading:
                logger.warning("Skipping %s: not a tradable symbol on the exchange", symbol)
                self.store.drop(symbol)
        symbols = self.store.symbols
        if not symbols:
            raise FatalStartupError("no tradable symbols configured")

        await asyncio.gather(*(self._load_history(symbol) for symbol in symbols))
        if self._stopping("history"):
            return

        if not self._subscribed:
            for symbol in symbols:
                self.stream.subscribe(symbol, StreamKind.KLINE, self._kline_handler(symbol))
                self.stream.subscribe(symbol, StreamKind.DEPTH, self._depth_handler(symbol))
            if self.settings.use_user_stream:
                self.stream.subscribe("USER", StreamKind.USER_DATA, self._on_user_event)
            self._subscribed = True

        await asyncio.gather(
            *(self.stream.connect(symbol, kind) for symbol in symbols for kind in (StreamKind.KLINE, StreamKind.DEPTH))
        )
        if self.settings.use_user_stream and not self.token.is_set():
            await self.stream.connect_user_data()
        if self._stopping("connecting streams"):
            return
        log_event(logger, "engine_started", symbols=symbols, timeframe=self.settings.timeframe)

    def _stopping(self, stage: str) -> bool:
        if self.token.is_set():
            logger.info("Shutdown requested during start-up after %s; not continuing", stage)
            return True
        return False

    async def _load_history(self, symbol: str) -> None:
        s = self.settings
        try:
            rows = await self.stream.request(
                self.rest.get_klines, symbol, s.timeframe, s.max_candles, weight=REQUEST_WEIGHTS["klines"]
            )
            self.store.seed_candles(symbol, (Candle.from_rest(row) for row in rows))
            depth = await self.stream.request(
                self.rest.get_order_book, symbol, s.depth.depth_levels, weight=REQUEST_WEIGHTS["depth"]
            )
            self.store.apply_depth_event(symbol, OrderBookSnapshot.from_depth_payload(depth))
        except Exception as exc:
            logger.warning("Initial data load failed for %s: %s", symbol, exc)
            return
        logger.info("Loaded %d candles for %s", len(self.store.get(symbol).candles), symbol)

    # ------------------------------------------------------------------
    # Stream handlers
    # ------------------------------------------------------------------
    def _kline_handler(self, symbol: str) -> Callable[[Dict[str, Any]], None]:
        def _handle(message: Dict[str, Any]) -> None:
            candle, closed = parse_kline_event(message)
            self.store.apply_candle_event(symbol, candle, closed)

        return _handle

    def _depth_handler(self, symbol: str) -> Callable[[Dict[str, Any]], None]:
        def _handle(message: Dict[str, Any]) -> None:
            self.store.apply_depth_event(symbol, OrderBookSnapshot.from_depth_payload(message))

        return _handle

    def _on_user_event(self, message: Dict[str, Any]) -> None:
        log_event(logger, "user_data_event", kind=message.get("e"))

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------
    async def analyze_market(self, symbol: str) -> Optional[AnalysisResult]:
        """Analyse one instrument; ``None`` when data is insufficient or analysis fails."""

        # Work on a snapshot so stream updates cannot change inputs mid-analysis.
        snapshot = self.store.snapshot(symbol)
        if not snapshot.candles:
            return None
        try:
            candle = self.candle_analyzer.analyze(snapshot.candles)
            if candle.insufficient_data:
                return None
            depth = None
            if snapshot.order_book is not None:
                depth = self.depth_analyzer.analyze(
                    snapshot.order_book, snapshot.previous_order_book, snapshot.candles
                )
            decision = self.fusion.determine(
                candle, depth.signals if depth is not None else DepthSignals(), snapshot.candles
            )
            rules = self.symbol_rules.get(symbol)
            plan = self.planner.plan(
                decision.directive,
                snapshot.order_book,
                snapshot.candles,
                candle,
                tick_size=rules.tick_size if rules else None,
            )
        except Exception:
            logger.exception("Analysis failed for %s", symbol)
            return None

        now = time.time()
        self.store.mark_analysed(symbol, now)
        return AnalysisResult(
            symbol=symbol,
            current_price=snapshot.current_price,
            directive=decision.directive,
            fusion_rule=decision.rule,
            indicators=candle,
            depth=depth,
            price_plan=plan,
            candle_closed=snapshot.last_candle_closed,
            timestamp=now,
        )

    async def run_cycle(self) -> List[AnalysisResult]:
        """Analyse every instrument concurrently and alert on actionable results."""

        with timed("analysis_cycle_seconds", symbols=len(self.store.symbols)):
            results = await asyncio.gather(*(self.analyze_market(s) for s in self.store.symbols))
        analysed = [result for result in results if result is not None]
        for result in analysed:
            if result.directive is Directive.NEUTRAL:
                continue
            log_event(
                logger,
                "signal",
                symbol=result.symbol,
                directive=result.directive.value,
                rule=result.fusion_rule,
                entry=result.price_plan.entry_price,
            )
            await asyncio.to_thread(self.notifier.notify, result)
        return analysed

    async def run_forever(self) -> None:
        """Run analysis cycles until shutdown, paced by ``analysis_interval``."""

        loop = asyncio.get_running_loop()
        interval = self.settings.analysis_interval
        while not self.token.is_set():
            started = loop.time()
            await self.run_cycle()
            if self.token.is_set():
                break
            await asyncio.sleep(max(0.0, interval - (loop.time() - started)))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def shutdown(self) -> None:
        # The stream releases its listen keys through the queue, so it stops first.
        await self.stream.shutdown()
        self.queue.close()

    async def restart(self) -> None:
        """Controlled restart: stop everything, clear shutdown state and boot again."""

        await self.shutdown()
        self.stream.resume()
        self.queue.reopen()
        await self.start()


__all__ = ["AnalysisResult", "FatalStartupError", "SignalEngine"]
