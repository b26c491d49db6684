from __future__ import annotations

import logging
import time

import requests

from autolev.core.errors import ExchangeError, InsufficientFunds, TransientExchangeError
from autolev.exchange.binance.signing import build_query, signed_query

log = logging.getLogger("autolev.binance")

# Binance error codes with special handling
_TIMESTAMP_OUTSIDE_RECV_WINDOW = -1021
_MARGIN_INSUFFICIENT = -2019
_NO_NEED_TO_CHANGE_POSITION_SIDE = -4059


class BinanceFuturesClient:
    """
    Blocking USDⓈ-M futures REST client.

    One attempt per call: failures are raised as typed errors and the
    gateway decides whether to retry (TransientExchangeError) or not.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = 5000,
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.timeout = timeout
        self.session = session or requests.Session()

        # server time offset (ms); positive means local clock is behind
        self._time_offset_ms: int = 0

    # ---------------- TRANSPORT ----------------

    def _send(self, method: str, url: str, headers: dict | None = None) -> requests.Response:
        try:
            return self.session.request(method, url, headers=headers or {}, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientExchangeError(f"{method} {url.split('?')[0]}: {e}") from e

    @staticmethod
    def _error_code(r: requests.Response) -> int | None:
        try:
            data = r.json()
        except ValueError:
            return None
        if isinstance(data, dict) and "code" in data:
            try:
                return int(data["code"])
            except (TypeError, ValueError):
                return None
        return None

    def _raise_for(self, method: str, path: str, r: requests.Response) -> None:
        if r.status_code < 400:
            return

        code = self._error_code(r)
        msg = f"Binance HTTP {r.status_code} {method} {path}: {r.text[:300]}"

        # Rate limit / temp ban / server errors are retryable
        if r.status_code in (418, 429) or r.status_code >= 500:
            raise TransientExchangeError(msg, status=r.status_code, code=code)
        if code == _MARGIN_INSUFFICIENT:
            raise InsufficientFunds(msg, status=r.status_code, code=code)
        raise ExchangeError(msg, status=r.status_code, code=code)

    def _request(self, method: str, path: str, params: dict | None = None):
        query = build_query(params or {})
        url = f"{self.base_url}{path}" + (f"?{query}" if query else "")
        r = self._send(method, url)
        self._raise_for(method, path, r)
        return r.json() if r.content else None

    # ---------------- TIME SYNC ----------------

    def _server_time_ms(self) -> int:
        data = self._request("GET", "/fapi/v1/time")
        return int(data["serverTime"])

    def sync_time(self) -> int:
        """
        Computes and stores local->server time offset.
        Positive offset means local clock is behind server.
        """
        local_ms = int(time.time() * 1000)
        server_ms = self._server_time_ms()
        self._time_offset_ms = server_ms - local_ms
        return self._time_offset_ms

    # ---------------- SIGNED REQUESTS ----------------

    def _signed_request(self, method: str, path: str, params: dict | None = None):
        if not self.api_key or not self.api_secret:
            raise ExchangeError("Missing API key or secret for signed request")

        params = dict(params or {})
        headers = {"X-MBX-APIKEY": self.api_key}

        def _attempt() -> requests.Response:
            params["timestamp"] = int(time.time() * 1000) + int(self._time_offset_ms)
            params["recvWindow"] = self.recv_window
            url = f"{self.base_url}{path}?{signed_query(self.api_secret, params)}"
            return self._send(method, url, headers)

        r = _attempt()

        # Timestamp drift: resync and retry once
        if r.status_code == 400 and self._error_code(r) == _TIMESTAMP_OUTSIDE_RECV_WINDOW:
            log.warning("timestamp outside recvWindow on %s %s; resyncing clock", method, path)
            self.sync_time()
            r = _attempt()

        self._raise_for(method, path, r)
        return r.json() if r.content else None

    # ---------------- PUBLIC ----------------

    def exchange_info(self) -> dict:
        return self._request("GET", "/fapi/v1/exchangeInfo")

    def klines(self, symbol: str, interval: str = "1h", limit: int = 100) -> list:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        return self._request("GET", "/fapi/v1/klines", params=params)

    def depth(self, symbol: str, limit: int = 20) -> dict:
        return self._request("GET", "/fapi/v1/depth", params={"symbol": symbol.upper(), "limit": limit})

    def last_price(self, symbol: str) -> float:
        data = self._request("GET", "/fapi/v1/ticker/price", params={"symbol": symbol.upper()})
        return float(data["price"])

    # ---------------- ACCOUNT ----------------

    def account_balance(self) -> list:
        return self._signed_request("GET", "/fapi/v2/balance")

    def position_risk_all(self) -> list:
        """
        Fetch ALL futures positions risk info (no symbol filter).
        Binance returns a list of positionRisk entries, flat ones included.
        """
        data = self._signed_request("GET", "/fapi/v2/positionRisk")
        return data if isinstance(data, list) else []

    def leverage_bracket(self, symbol: str) -> list:
        return self._signed_request("GET", "/fapi/v1/leverageBracket", {"symbol": symbol.upper()})

    def set_leverage(self, symbol: str, leverage: int) -> dict:
        return self._signed_request(
            "POST",
            "/fapi/v1/leverage",
            {"symbol": symbol.upper(), "leverage": int(leverage)},
        )

    def position_mode(self) -> bool:
        """True when the account is in dual-side (hedge) position mode."""
        data = self._signed_request("GET", "/fapi/v1/positionSide/dual")
        return bool((data or {}).get("dualSidePosition"))

    def set_position_mode(self, dual_side: bool) -> dict:
        try:
            return self._signed_request(
                "POST",
                "/fapi/v1/positionSide/dual",
                {"dualSidePosition": bool(dual_side)},
            )
        except ExchangeError as e:
            # already in the requested mode
            if e.code == _NO_NEED_TO_CHANGE_POSITION_SIDE:
                return {"code": 200, "msg": "unchanged"}
            raise

    # ---------------- ORDERS ----------------

    def place_order(self, payload: dict) -> dict:
        return self._signed_request("POST", "/fapi/v1/order", payload)

    def cancel_order(self, symbol: str, order_id: int) -> dict:
        return self._signed_request(
            "DELETE",
            "/fapi/v1/order",
            {"symbol": symbol.upper(), "orderId": int(order_id)},
        )

    def cancel_all_orders(self, symbol: str) -> dict:
        return self._signed_request(
            "DELETE",
            "/fapi/v1/allOpenOrders",
            {"symbol": symbol.upper()},
        )

    def open_orders(self, symbol: str | None = None) -> list:
        params = {}
        if symbol:
            params["symbol"] = symbol.upper()
        return self._signed_request("GET", "/fapi/v1/openOrders", params)
