from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from autolev.core.config import Settings, settings as default_settings
from autolev.core.errors import ExchangeError, InsufficientFunds, TradeValidationError
from autolev.core.user_settings import UserSettings
from autolev.execution.executor import OrderExecutor
from autolev.execution.position_manager import PositionManager
from autolev.execution.trailing import TrailingBook
from autolev.ops.events import Event, EventBus, EventType
from autolev.risk.gate import CapitalGate
from autolev.risk.performance import PerformanceTracker
from autolev.runner.models import UserSession
from autolev.strategy.base import Bias, Opportunity
from autolev.strategy.evaluator import OpportunityEvaluator
from autolev.symbols.leverage import effective_min_leverage, is_leverage_eligible, select_leverage
from autolev.symbols.sizing import position_fraction, size_from_budget
from autolev.symbols.universe import eligible_symbols

log = logging.getLogger("autolev.allocator")


@dataclass(frozen=True)
class PlannedEntry:
    symbol: str
    bias: Bias
    score: float
    leverage: int
    margin: float
    price: float


@dataclass
class ScanResult:
    planned: List[PlannedEntry] = field(default_factory=list)
    opened: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    blocked: Optional[str] = None


def is_anomaly(opp: Opportunity, *, volume_ratio: float, move_pct: float) -> bool:
    meta = opp.meta or {}
    vol = meta.get("volume_strength", 0.0)
    move = meta.get("last_move", 0.0)
    if isinstance(vol, float) and math.isfinite(vol) and vol >= volume_ratio:
        return True
    return isinstance(move, float) and math.isfinite(move) and abs(move) >= move_pct


def plan_entries(
    opportunities: Iterable[Opportunity],
    *,
    slots: int,
    available: float,
    user: UserSettings,
    performance_ratio: float,
    max_leverage: Dict[str, int],
    leverage_floor: int,
) -> List[PlannedEntry]:
    """
    Rank qualifying opportunities by score and fill the free slots.

    `max_leverage` holds the exchange maximum per symbol; symbols missing
    from it or below the floor are never planned.
    """
    if slots <= 0 or available <= 0:
        return []

    min_lev = effective_min_leverage(user.min_leverage, leverage_floor)
    ranked = sorted(
        (
            o for o in opportunities
            if o.entry_ok
            and o.bias is not Bias.NEUTRAL
            and o.score >= user.min_score
            and is_leverage_eligible(max_leverage.get(o.symbol), leverage_floor)
        ),
        key=lambda o: o.score,
        reverse=True,
    )

    plan = []
    for opp in ranked:
        if len(plan) >= slots:
            break
        lev = select_leverage(
            opp.score,
            min_leverage=min_lev,
            symbol_max=max_leverage[opp.symbol],
            user_max=user.max_leverage,
        )
        if lev is None:
            # user cap or symbol max sits under the floor
            continue
        frac = position_fraction(user.position_size_fraction, performance_ratio, opp.atr_pct)
        plan.append(
            PlannedEntry(
                symbol=opp.symbol,
                bias=opp.bias,
                score=opp.score,
                leverage=lev,
                margin=available * frac,
                price=opp.last_price,
            )
        )
    return plan


class PortfolioAllocator:
    """One scan: capital check, universe, scoring, ranking, opening."""

    def __init__(
        self,
        gateway,
        evaluator: OpportunityEvaluator,
        executor: OrderExecutor,
        manager: PositionManager,
        book: TrailingBook,
        performance: PerformanceTracker,
        events: EventBus,
        *,
        cfg: Settings | None = None,
        on_insufficient_funds: Callable[[UserSession], None] | None = None,
    ):
        self.gateway = gateway
        self.evaluator = evaluator
        self.executor = executor
        self.manager = manager
        self.book = book
        self.performance = performance
        self.events = events
        self.cfg = cfg or default_settings
        self.on_insufficient_funds = on_insufficient_funds

    def _emit(self, session: UserSession, etype: EventType, message: str, symbol: str | None = None, **details) -> None:
        self.events.emit(Event(etype, session.user_id, message, symbol=symbol, details=details))

    def _funds_short(self, session: UserSession, message: str, symbol: str | None = None, **details) -> None:
        self._emit(session, EventType.INSUFFICIENT_FUNDS, message, symbol=symbol, **details)
        if self.on_insufficient_funds is not None:
            self.on_insufficient_funds(session)

    async def _max_leverage(self, session: UserSession, symbols: Iterable[str]) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for sym in symbols:
            try:
                out[sym] = await self.gateway.fetch_max_leverage(session.credentials, sym)
            except (ExchangeError, TradeValidationError) as e:
                log.info("no leverage bracket for %s: %s", sym, e)
        return out

    async def scan(self, session: UserSession) -> ScanResult:
        user = session.settings
        result = ScanResult()

        account = await self.gateway.get_account(session.credentials)
        gate = CapitalGate(min_available_fraction=user.min_available_fraction)
        decision = gate.can_open(account.balance_for(self.cfg.QUOTE_ASSET))
        if not decision.allowed:
            result.blocked = decision.reason
            self._funds_short(
                session,
                f"New entries paused: {decision.available_fraction:.0%} of the wallet is free "
                f"(minimum {user.min_available_fraction:.0%})",
                reason=decision.reason,
                available=decision.available,
                total=decision.total,
            )
            return result

        held = account.open_symbols
        slots = user.max_positions - len(held)
        if slots <= 0:
            result.blocked = "max_positions"
            return result

        candidates = user.favorite_symbols or self.cfg.TRADE_SYMBOLS
        symbols = eligible_symbols(
            candidates=candidates,
            tradable=await self.gateway.list_symbols(),
            held=held,
            blacklist=self.cfg.BLACKLIST,
            in_flight=self.book.in_flight(session.user_id),
        )
        if not symbols:
            result.blocked = "no_eligible_symbols"
            return result

        ratio = self.performance.ratio(session.user_id)
        opportunities = await self.evaluator.evaluate_many(symbols, user, ratio)

        for opp in opportunities:
            if is_anomaly(opp, volume_ratio=self.cfg.ANOMALY_VOLUME_RATIO, move_pct=self.cfg.ANOMALY_MOVE_PCT):
                meta = opp.meta or {}
                self._emit(
                    session,
                    EventType.ANOMALY_DETECTED,
                    f"{opp.symbol}: volume x{meta.get('volume_strength', 0.0):.1f}, "
                    f"last candle {meta.get('last_move', 0.0):+.1%}",
                    symbol=opp.symbol,
                    volume_strength=meta.get("volume_strength"),
                    last_move=meta.get("last_move"),
                )

        qualifying = [o for o in opportunities if o.entry_ok and o.score >= user.min_score]
        result.planned = plan_entries(
            opportunities,
            slots=slots,
            available=decision.available,
            user=user,
            performance_ratio=ratio,
            max_leverage=await self._max_leverage(session, [o.symbol for o in qualifying]),
            leverage_floor=self.cfg.MIN_LEVERAGE_FLOOR,
        )

        for entry in result.planned:
            reason = await self._open(session, entry)
            if reason == "ok":
                result.opened.append(entry.symbol)
            else:
                result.skipped[entry.symbol] = reason
            if reason == "insufficient_funds":
                break
        return result

    async def _open(self, session: UserSession, entry: PlannedEntry) -> str:
        with self.book.hold(session.user_id, entry.symbol) as acquired:
            if not acquired:
                return "in_flight"
            try:
                info = await self.gateway.fetch_symbol_info(entry.symbol)
                size = size_from_budget(
                    price=entry.price,
                    usdt_margin=entry.margin,
                    leverage=entry.leverage,
                    info=info,
                )
                if not size.ok:
                    log.info("skip %s: %s %s", entry.symbol, size.reason, size.details)
                    return size.reason

                side = entry.bias.value
                await self.executor.open_market(
                    session.credentials, entry.symbol, side, size.qty, entry.leverage,
                    dual_side=session.dual_side,
                )
                state = await self.manager.adopt(session, entry.symbol)
            except InsufficientFunds as e:
                self._funds_short(session, f"{entry.symbol} entry rejected: {e}", symbol=entry.symbol)
                return "insufficient_funds"
            except (ExchangeError, TradeValidationError) as e:
                log.warning("open %s failed: %s", entry.symbol, e)
                self._emit(session, EventType.ERROR, f"{entry.symbol}: {e}", symbol=entry.symbol, error=type(e).__name__)
                return "error"

            self._emit(
                session,
                EventType.POSITION_OPENED,
                f"{entry.symbol} {side} x{entry.leverage} qty {size.qty} at ~{entry.price:g} (score {entry.score:.2f})",
                symbol=entry.symbol,
                side=side,
                leverage=entry.leverage,
                quantity=float(size.qty),
                score=entry.score,
                stop_loss=state.stop_loss if state else None,
            )
            return "ok"
