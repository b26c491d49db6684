from __future__ import annotations

from typing import Any, Dict

from autolev.exchange.binance.models import AccountSnapshot


def build_daily_report(
    account: AccountSnapshot,
    *,
    quote_asset: str,
    performance_ratio: float,
    day_summary: Dict[str, Any],
) -> Dict[str, Any]:
    bal = account.balance_for(quote_asset)
    return {
        "balance": float(bal.balance) if bal else 0.0,
        "available": float(bal.available_balance) if bal else 0.0,
        "unrealized_pnl": sum(p.unrealized_profit for p in account.positions),
        "open_positions": [
            {
                "symbol": p.symbol,
                "side": p.side,
                "quantity": p.quantity,
                "entry_price": p.entry_price,
                "mark_price": p.mark_price,
                "leverage": p.leverage,
                "unrealized_pnl": p.unrealized_profit,
            }
            for p in account.positions
        ],
        "performance_ratio": performance_ratio,
        "trades_24h": day_summary.get("trades", 0),
        "wins_24h": day_summary.get("wins", 0),
        "realized_pnl_24h": day_summary.get("realized_pnl", 0.0),
    }


def report_headline(report: Dict[str, Any], quote_asset: str) -> str:
    return (
        f"Balance {report['balance']:.2f} {quote_asset} "
        f"(available {report['available']:.2f}), "
        f"{len(report['open_positions'])} open, "
        f"{report['trades_24h']} trades / {report['realized_pnl_24h']:+.2f} {quote_asset} in 24h"
    )
