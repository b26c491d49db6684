from __future__ import annotations

import asyncio
import time


async def wait_until_flat(
    gateway,
    credentials,
    symbol: str,
    timeout_s: float = 12.0,
    poll_s: float = 0.5,
    *,
    clock=time.monotonic,
    sleep=asyncio.sleep,
) -> bool:
    """
    Confirm the position is fully closed on the exchange.
    Market orders can come back NEW before the fill lands.
    """
    symbol = symbol.upper()
    deadline = clock() + timeout_s

    while True:
        account = await gateway.get_account(credentials)
        if not account.positions_for(symbol):
            return True
        if clock() >= deadline:
            return False
        await sleep(poll_s)
