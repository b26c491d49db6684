from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from autolev.core.errors import ExchangeError, TradeValidationError
from autolev.exchange.binance.filters import SymbolInfo, floor_to_step
from autolev.exchange.binance.models import OrderParams, OrderResult
from autolev.exchange.gateway import Credentials
from autolev.execution.exit_rules import side_sign, trigger_price

log = logging.getLogger("autolev.executor")


def entry_order_side(side: str) -> str:
    return "BUY" if side_sign(side) > 0 else "SELL"


def exit_order_side(side: str) -> str:
    return "SELL" if side_sign(side) > 0 else "BUY"


class OrderExecutor:
    """
    Turns lifecycle decisions into exchange orders.

    Quantities are floored to the step size here; anything that floors to
    nothing raises TradeValidationError before an order is sent.
    """

    def __init__(self, gateway, *, audit=None):
        self.gateway = gateway
        self.audit = audit

    # ---------------- INTERNAL HELPERS ----------------

    @staticmethod
    def quantity_for(info: SymbolInfo, quantity) -> Decimal:
        qty = floor_to_step(quantity, info.step_size)
        if qty <= 0 or qty < info.min_qty:
            raise TradeValidationError(
                f"{info.symbol}: quantity {quantity} floors to {qty}, below step/min qty "
                f"(step={info.step_size}, min={info.min_qty})"
            )
        return qty

    def _audit_warn(self, symbol: str, action: str, details: dict) -> None:
        if self.audit is None:
            return
        self.audit.event(event_type="WARN", symbol=symbol, message=action, details=details)

    # ---------------- ENTRIES / EXITS ----------------

    async def open_market(
        self,
        creds: Credentials,
        symbol: str,
        side: str,
        quantity,
        leverage: int,
        *,
        dual_side: bool = False,
    ) -> OrderResult:
        info = await self.gateway.fetch_symbol_info(symbol)
        qty = self.quantity_for(info, quantity)
        await self.gateway.set_leverage(creds, symbol, int(leverage))
        return await self.gateway.submit_order(
            creds,
            OrderParams(
                symbol=symbol,
                side=entry_order_side(side),
                type="MARKET",
                quantity=qty,
                position_side=side.upper() if dual_side else None,
            ),
        )

    async def close_market(
        self,
        creds: Credentials,
        symbol: str,
        side: str,
        quantity,
        *,
        dual_side: bool = False,
    ) -> OrderResult:
        """Reduce the `side` position by `quantity` at market."""
        info = await self.gateway.fetch_symbol_info(symbol)
        qty = self.quantity_for(info, quantity)
        return await self.gateway.submit_order(
            creds,
            OrderParams(
                symbol=symbol,
                side=exit_order_side(side),
                type="MARKET",
                quantity=qty,
                reduce_only=True,
                position_side=side.upper() if dual_side else None,
            ),
        )

    # ---------------- PROTECTION ORDERS ----------------

    async def _protective(
        self,
        creds: Credentials,
        symbol: str,
        side: str,
        level: float,
        *,
        kind: str,
        current_price: Optional[float],
        dual_side: bool,
    ) -> OrderResult:
        info = await self.gateway.fetch_symbol_info(symbol)
        px = trigger_price(side, level, info.tick_size, current_price=current_price, kind=kind)
        if px <= 0:
            raise TradeValidationError(f"{symbol}: {kind} trigger {level} rounds to {px}")
        return await self.gateway.submit_order(
            creds,
            OrderParams(
                symbol=symbol,
                side=exit_order_side(side),
                type="STOP_MARKET" if kind == "stop" else "TAKE_PROFIT_MARKET",
                stop_price=px,
                close_position=True,
                position_side=side.upper() if dual_side else None,
            ),
        )

    async def place_stop(self, creds, symbol, side, stop_price, *, current_price=None, dual_side=False) -> OrderResult:
        return await self._protective(
            creds, symbol, side, stop_price, kind="stop", current_price=current_price, dual_side=dual_side
        )

    async def place_take_profit(self, creds, symbol, side, price, *, current_price=None, dual_side=False) -> OrderResult:
        return await self._protective(
            creds, symbol, side, price, kind="take_profit", current_price=current_price, dual_side=dual_side
        )

    # ---------------- CANCELS ----------------

    async def cancel_quiet(self, creds: Credentials, symbol: str, order_id: Optional[int]) -> bool:
        """Cancel one order; an already-gone order is not an error."""
        if order_id is None:
            return True
        try:
            await self.gateway.cancel_order(creds, symbol, order_id)
            return True
        except ExchangeError as e:
            log.warning("cancel %s#%s failed: %s", symbol, order_id, e)
            self._audit_warn(symbol, "CANCEL_ORDER_FAILED", {"order_id": order_id, "error": str(e)})
            return False

    async def cancel_all_quiet(self, creds: Credentials, symbol: str) -> bool:
        try:
            await self.gateway.cancel_all_orders(creds, symbol)
            return True
        except ExchangeError as e:
            log.warning("cancel-all %s failed: %s", symbol, e)
            self._audit_warn(symbol, "CANCEL_ORDERS_FAILED", {"error": str(e)})
            return False
