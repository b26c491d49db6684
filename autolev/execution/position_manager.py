"""
Position lifecycle: NONE -> OPEN_UNMANAGED -> MANAGED -> CLOSED per
(user, symbol).

Every tick runs, per open symbol and in this order: stagnation close,
trailing update, partial take-profits, stop / trailing-take-profit exit,
hedge. State is only written back after the exchange accepted the order
that justifies it; a failing symbol never blocks the others.
"""
from __future__ import annotations

import logging
import time
from decimal import Decimal
from typing import Dict, List, Optional

from autolev.core.config import Settings, settings as default_settings
from autolev.core.errors import ExchangeError, InsufficientFunds, TradeValidationError
from autolev.exchange.binance.filters import floor_to_step
from autolev.exchange.binance.models import PositionEntry
from autolev.execution import exit_rules
from autolev.execution.confirm import wait_until_flat
from autolev.execution.executor import OrderExecutor
from autolev.execution.trailing import HedgeRef, TrailingBook, TrailingState
from autolev.ops.events import Event, EventBus, EventType
from autolev.persistence.trade_log import ClosedTrade
from autolev.risk.performance import PerformanceTracker
from autolev.runner.models import UserSession
from autolev.symbols.sizing import position_fraction, size_from_budget

log = logging.getLogger("autolev.lifecycle")


def _opposite(side: str) -> str:
    return "SHORT" if side.upper() == "LONG" else "LONG"


class PositionManager:
    def __init__(
        self,
        gateway,
        executor: OrderExecutor,
        book: TrailingBook,
        performance: PerformanceTracker,
        events: EventBus,
        *,
        price_book=None,
        cfg: Settings | None = None,
        clock=time.time,
    ):
        self.gateway = gateway
        self.executor = executor
        self.book = book
        self.performance = performance
        self.events = events
        self.price_book = price_book
        self.cfg = cfg or default_settings
        self._clock = clock

    # ---------------- INTERNAL HELPERS ----------------

    def _emit(self, session: UserSession, etype: EventType, message: str, symbol: str | None = None, **details) -> None:
        self.events.emit(Event(etype, session.user_id, message, symbol=symbol, details=details))

    def _report_error(self, session: UserSession, symbol: str, err: Exception) -> None:
        self._emit(session, EventType.ERROR, f"{symbol}: {err}", symbol=symbol, error=type(err).__name__)

    def _price(self, pos: PositionEntry) -> float:
        if self.price_book is not None:
            px = self.price_book.get(pos.symbol, max_age=self.cfg.PRICE_STALE_SECONDS)
            if px:
                return px
        if pos.mark_price > 0:
            return pos.mark_price
        raise TradeValidationError(f"no fresh price for {pos.symbol}")

    @staticmethod
    def _group(positions) -> Dict[str, List[PositionEntry]]:
        out: Dict[str, List[PositionEntry]] = {}
        for p in positions:
            out.setdefault(p.symbol, []).append(p)
        return out

    def _split_legs(self, state: Optional[TrailingState], legs: List[PositionEntry]):
        """Primary leg (the managed one) and an optional hedge leg."""
        if state is not None:
            primary = next((p for p in legs if p.side == state.side), None)
        else:
            primary = None
        if primary is None:
            primary = max(legs, key=lambda p: p.quantity * max(p.mark_price, p.entry_price))
        hedge = next((p for p in legs if p is not primary and p.side != primary.side), None)
        return primary, hedge

    # ---------------- MONITOR TICK ----------------

    async def monitor(self, session: UserSession) -> None:
        account = await self.gateway.get_account(session.credentials)
        await self.reconcile(session, account.open_symbols)

        for symbol, legs in self._group(account.positions).items():
            with self.book.hold(session.user_id, symbol) as acquired:
                if not acquired:
                    continue
                try:
                    await self._tick_symbol(session, legs)
                except (TradeValidationError, ExchangeError) as e:
                    log.warning("tick %s abandoned: %s", symbol, e)
                    self._report_error(session, symbol, e)
                except Exception as e:
                    log.exception("tick %s crashed", symbol)
                    self._report_error(session, symbol, e)

    async def reconcile(self, session: UserSession, open_symbols) -> None:
        """Managed states whose position disappeared on the exchange get closed out."""
        for state in self.book.states(session.user_id):
            if state.symbol in open_symbols:
                continue
            with self.book.hold(session.user_id, state.symbol) as acquired:
                if not acquired:
                    continue
                px = self.price_book.get(state.symbol) if self.price_book is not None else None
                exit_price = px or state.stop_loss
                await self.executor.cancel_all_quiet(session.credentials, state.symbol)
                self._closed_on_exchange(session, state, exit_price)

    def _closed_on_exchange(self, session: UserSession, state: TrailingState, exit_price: float) -> None:
        self._finish(session, state, exit_price, "closed_on_exchange")
        self._emit(
            session,
            EventType.POSITION_CLOSED,
            f"{state.symbol} {state.side} closed on the exchange near {exit_price:g}",
            symbol=state.symbol,
            reason="closed_on_exchange",
            exit_price=exit_price,
        )

    async def _main_leg_gone(
        self,
        session: UserSession,
        state: TrailingState,
        legs: List[PositionEntry],
        price: float,
    ) -> None:
        """
        The managed side vanished while the symbol still has a position.
        With a hedge on, that leftover is the hedge and it goes too;
        otherwise the position was flipped outside the agent and is adopted.
        """
        creds = session.credentials
        log.warning("%s %s leg closed on the exchange; %d leg(s) left", state.symbol, state.side, len(legs))
        if state.hedge is not None:
            await self.executor.cancel_all_quiet(creds, state.symbol)
            for leg in legs:
                await self.executor.close_market(creds, state.symbol, leg.side, leg.quantity, dual_side=session.dual_side)
            self._closed_on_exchange(session, state, price)
            return

        self._closed_on_exchange(session, state, price)
        primary, hedge_leg = self._split_legs(None, legs)
        await self._adopt(session, primary, price, hedge_leg=hedge_leg)

    async def _tick_symbol(self, session: UserSession, legs: List[PositionEntry]) -> None:
        user_id, symbol = session.user_id, legs[0].symbol
        state = self.book.get(user_id, symbol)
        primary, hedge_leg = self._split_legs(state, legs)
        price = self._price(primary)

        # OPEN_UNMANAGED -> MANAGED
        if state is None:
            await self._adopt(session, primary, price, hedge_leg=hedge_leg)
            return

        if primary.side != state.side:
            await self._main_leg_gone(session, state, legs, price)
            return

        # exchange truth wins over local state
        if primary.quantity > state.quantity * 1.0001:
            log.warning(
                "%s state out of sync (local %s %.8g, exchange %s %.8g); re-seeding",
                symbol, state.side, state.quantity, primary.side, primary.quantity,
            )
            self.book.pop(user_id, symbol)
            await self._adopt(session, primary, price, hedge_leg=hedge_leg, reentries=state.reentries)
            return
        if primary.quantity < state.quantity:
            state.quantity = primary.quantity
        if hedge_leg is not None and state.hedge is None:
            state.hedge = HedgeRef(hedge_leg.side, hedge_leg.quantity, hedge_leg.entry_price, self._clock())

        await self._ensure_protection(session, state, price)

        # 1) stagnation
        if exit_rules.is_stagnant(
            opened_at=state.opened_at,
            now=self._clock(),
            entry_price=state.entry_price,
            price=price,
            stagnation_seconds=session.settings.stagnation_minutes * 60.0,
            idle_move=session.settings.idle_move_percent,
        ):
            await self._close_out(session, state, price, "stagnation")
            self._emit(
                session,
                EventType.STAGNATION_CLOSE,
                f"{symbol} closed after {session.settings.stagnation_minutes:g} min without movement",
                symbol=symbol,
                exit_price=price,
            )
            return

        # 2) trailing
        update = exit_rules.trail(
            state.side,
            price,
            extreme_price=state.extreme_price,
            stop_loss=state.stop_loss,
            trailing_take_profit=state.trailing_take_profit,
            user=session.settings,
        )
        if update is not None:
            await self._apply_trail(session, state, update, price)

        # 3) partial take-profits
        for level, target in ((1, state.take_profit1), (2, state.take_profit2)):
            done = state.partial_closed1 if level == 1 else state.partial_closed2
            if not done and exit_rules.level_reached(state.side, price, target):
                await self._partial_close(session, state, level, price)

        # 4) exit
        reason = None
        if exit_rules.stop_crossed(state.side, price, state.stop_loss):
            reason = "stop_loss"
        elif exit_rules.trailing_tp_crossed(state.side, price, state.trailing_take_profit, state.entry_price):
            reason = "trailing_take_profit"
        if reason is not None:
            await self._exit(session, state, price, reason)
            return

        # 5) hedge
        await self._maybe_hedge(session, state, price)

    # ---------------- TRANSITIONS ----------------

    async def adopt(self, session: UserSession, symbol: str, *, reentries: int = 0) -> Optional[TrailingState]:
        """Put a freshly opened position under management right away."""
        account = await self.gateway.get_account(session.credentials)
        legs = account.positions_for(symbol)
        if not legs:
            return None
        primary, hedge_leg = self._split_legs(None, legs)
        return await self._adopt(session, primary, self._price(primary), hedge_leg=hedge_leg, reentries=reentries)

    async def _adopt(
        self,
        session: UserSession,
        pos: PositionEntry,
        price: float,
        *,
        hedge_leg: Optional[PositionEntry] = None,
        reentries: int = 0,
    ) -> TrailingState:
        levels = exit_rules.seed_levels(pos.side, pos.entry_price, session.settings)
        exit_rules.validate_levels(pos.side, pos.entry_price, levels.stop_loss, levels.take_profit1)
        now = self._clock()
        state = TrailingState(
            user_id=session.user_id,
            symbol=pos.symbol,
            side=pos.side,
            entry_price=pos.entry_price,
            quantity=pos.quantity,
            initial_quantity=pos.quantity,
            leverage=pos.leverage,
            stop_loss=levels.stop_loss,
            take_profit1=levels.take_profit1,
            take_profit2=levels.take_profit2,
            take_profit=levels.take_profit,
            trailing_take_profit=levels.trailing_take_profit,
            extreme_price=pos.entry_price,
            opened_at=now,
            reentries=reentries,
        )
        if hedge_leg is not None:
            state.hedge = HedgeRef(hedge_leg.side, hedge_leg.quantity, hedge_leg.entry_price, now)

        # clean slate: leftovers from an earlier, half-finished adoption
        await self.executor.cancel_all_quiet(session.credentials, pos.symbol)
        stop = await self.executor.place_stop(
            session.credentials, pos.symbol, pos.side, levels.stop_loss,
            current_price=price, dual_side=session.dual_side,
        )
        tp = await self.executor.place_take_profit(
            session.credentials, pos.symbol, pos.side, levels.take_profit,
            current_price=price, dual_side=session.dual_side,
        )
        state.stop_order_id = stop.order_id
        state.take_profit_order_id = tp.order_id
        self.book.put(state)
        log.info(
            "managing %s %s qty=%.8g entry=%.8g sl=%.8g tp1=%.8g tp2=%.8g",
            pos.symbol, pos.side, pos.quantity, pos.entry_price,
            levels.stop_loss, levels.take_profit1, levels.take_profit2,
        )
        return state

    async def _ensure_protection(self, session: UserSession, state: TrailingState, price: float) -> None:
        """Re-place a resting order that a failed replacement left missing."""
        if state.stop_order_id is None:
            order = await self.executor.place_stop(
                session.credentials, state.symbol, state.side, state.stop_loss,
                current_price=price, dual_side=session.dual_side,
            )
            state.stop_order_id = order.order_id
        if state.take_profit_order_id is None:
            order = await self.executor.place_take_profit(
                session.credentials, state.symbol, state.side, state.take_profit,
                current_price=price, dual_side=session.dual_side,
            )
            state.take_profit_order_id = order.order_id

    async def _apply_trail(self, session: UserSession, state: TrailingState, update, price: float) -> None:
        if update.stop_moved:
            await self.executor.cancel_quiet(session.credentials, state.symbol, state.stop_order_id)
            # the old order is gone either way
            state.stop_order_id = None
            order = await self.executor.place_stop(
                session.credentials, state.symbol, state.side, update.stop_loss,
                current_price=price, dual_side=session.dual_side,
            )
            state.stop_order_id = order.order_id

        previous = state.stop_loss
        state.apply_trail(update)
        if update.stop_moved:
            self._emit(
                session,
                EventType.TRAILING_STOP_UPDATED,
                f"{state.symbol} stop moved {previous:g} -> {state.stop_loss:g}",
                symbol=state.symbol,
                stop_loss=state.stop_loss,
                trailing_take_profit=state.trailing_take_profit,
            )

    async def _partial_close(self, session: UserSession, state: TrailingState, level: int, price: float) -> None:
        info = await self.gateway.fetch_symbol_info(state.symbol)
        qty = floor_to_step(Decimal(str(state.quantity)) / 3, info.step_size)
        if qty <= 0 or qty < info.min_qty:
            log.info("%s TP%d reached but a third of %.8g is below min qty; flag only", state.symbol, level, state.quantity)
            state.mark_partial(level, 0.0, price)
            return

        await self.executor.close_market(
            session.credentials, state.symbol, state.side, qty, dual_side=session.dual_side
        )
        state.mark_partial(level, float(qty), price)
        self._emit(
            session,
            EventType.PARTIAL_TAKE_PROFIT,
            f"{state.symbol} TP{level} hit at {price:g}: closed {qty} ({state.quantity:g} left)",
            symbol=state.symbol,
            level=level,
            quantity=float(qty),
            price=price,
        )

    async def _exit(self, session: UserSession, state: TrailingState, price: float, reason: str) -> None:
        await self._close_out(session, state, price, reason)
        self._emit(
            session,
            EventType.POSITION_CLOSED,
            f"{state.symbol} {state.side} closed at {price:g} ({reason}), pnl {state.realized_pnl:+.2f}",
            symbol=state.symbol,
            reason=reason,
            exit_price=price,
            realized_pnl=state.realized_pnl,
        )
        user = session.settings
        if state.reentries < user.max_reentries and exit_rules.near_entry(
            state.entry_price, price, user.reentry_threshold
        ):
            await self._reenter(session, state, price)

    async def _close_out(self, session: UserSession, state: TrailingState, price: float, reason: str) -> None:
        """Market-close the remaining quantity (and any hedge), record, drop state."""
        creds = session.credentials
        await self.executor.close_market(creds, state.symbol, state.side, state.quantity, dual_side=session.dual_side)
        await self.executor.cancel_all_quiet(creds, state.symbol)

        if state.hedge is not None:
            try:
                await self.executor.close_market(
                    creds, state.symbol, state.hedge.side, state.hedge.quantity, dual_side=session.dual_side
                )
            except (ExchangeError, TradeValidationError) as e:
                log.error("%s hedge close failed: %s", state.symbol, e)
                self._report_error(session, state.symbol, e)

        state.realized_pnl += state.pnl_for(state.quantity, price)
        state.quantity = 0.0
        self._finish(session, state, price, reason)

    def _finish(self, session: UserSession, state: TrailingState, exit_price: float, reason: str) -> None:
        if state.quantity > 0:
            state.realized_pnl += state.pnl_for(state.quantity, exit_price)
            state.quantity = 0.0
        self.performance.record(
            ClosedTrade(
                user_id=session.user_id,
                symbol=state.symbol,
                side=state.side,
                entry_price=state.entry_price,
                exit_price=exit_price,
                quantity=state.initial_quantity,
                leverage=state.leverage,
                realized_pnl=state.realized_pnl,
                return_pct=state.return_pct(),
                reason=reason,
            )
        )
        self.book.pop(session.user_id, state.symbol)

    async def _reenter(self, session: UserSession, old: TrailingState, price: float) -> None:
        """Same direction again, sized from a freshly fetched balance."""
        creds = session.credentials
        account = await self.gateway.get_account(creds)
        bal = account.balance_for(self.cfg.QUOTE_ASSET)
        if bal is None or bal.available_balance <= 0:
            log.info("%s re-entry skipped: no available balance", old.symbol)
            return

        info = await self.gateway.fetch_symbol_info(old.symbol)
        frac = position_fraction(
            session.settings.position_size_fraction,
            self.performance.ratio(session.user_id),
            atr_pct=0.0,
        )
        size = size_from_budget(
            price=price,
            usdt_margin=bal.available_balance * frac,
            leverage=old.leverage,
            info=info,
        )
        if not size.ok:
            log.info("%s re-entry skipped: %s", old.symbol, size.reason)
            return

        try:
            await self.executor.open_market(
                creds, old.symbol, old.side, size.qty, old.leverage, dual_side=session.dual_side
            )
        except InsufficientFunds as e:
            self._emit(session, EventType.INSUFFICIENT_FUNDS, f"{old.symbol} re-entry skipped: {e}", symbol=old.symbol)
            return

        await self.adopt(session, old.symbol, reentries=old.reentries + 1)
        self._emit(
            session,
            EventType.REENTRY,
            f"{old.symbol} re-entered {old.side} x{old.leverage} qty {size.qty}",
            symbol=old.symbol,
            quantity=float(size.qty),
            leverage=old.leverage,
        )

    async def _maybe_hedge(self, session: UserSession, state: TrailingState, price: float) -> None:
        if state.hedge is not None or not session.hedging_ready:
            return
        if exit_rules.adverse_excursion(state.side, state.entry_price, price) <= self.cfg.HEDGE_TRIGGER_PCT:
            return

        info = await self.gateway.fetch_symbol_info(state.symbol)
        qty = floor_to_step(Decimal(str(state.quantity)) / 2, info.step_size)
        if qty <= 0 or qty < info.min_qty:
            log.info("%s hedge skipped: half of %.8g below min qty", state.symbol, state.quantity)
            return

        side = _opposite(state.side)
        await self.executor.open_market(
            session.credentials, state.symbol, side, qty, state.leverage, dual_side=True
        )
        state.hedge = HedgeRef(side, float(qty), price, self._clock())
        self._emit(
            session,
            EventType.HEDGE_OPENED,
            f"{state.symbol} hedged with {side} {qty} at {price:g}",
            symbol=state.symbol,
            quantity=float(qty),
            price=price,
        )

    # ---------------- MANUAL CLOSE ----------------

    async def close_symbol(self, session: UserSession, symbol: str, *, confirm: bool = True) -> bool:
        symbol = symbol.upper()
        with self.book.hold(session.user_id, symbol) as acquired:
            if not acquired:
                raise TradeValidationError(f"{symbol} is busy, try again")

            creds = session.credentials
            account = await self.gateway.get_account(creds)
            legs = account.positions_for(symbol)
            state = self.book.get(session.user_id, symbol)
            await self.executor.cancel_all_quiet(creds, symbol)

            for leg in legs:
                await self.executor.close_market(creds, symbol, leg.side, leg.quantity, dual_side=session.dual_side)

            if state is not None:
                primary = next((p for p in legs if p.side == state.side), None)
                exit_price = self._price(primary) if primary is not None else state.extreme_price
                self._finish(session, state, exit_price, "manual")

            if legs:
                self._emit(session, EventType.POSITION_CLOSED, f"{symbol} closed manually", symbol=symbol, reason="manual")

        if legs and confirm:
            return await wait_until_flat(self.gateway, creds, symbol)
        return True

    async def close_all(self, session: UserSession) -> Dict[str, bool]:
        account = await self.gateway.get_account(session.credentials)
        out: Dict[str, bool] = {}
        for symbol in sorted(account.open_symbols):
            try:
                out[symbol] = await self.close_symbol(session, symbol)
            except (TradeValidationError, ExchangeError) as e:
                self._report_error(session, symbol, e)
                out[symbol] = False
        return out
