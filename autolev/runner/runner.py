from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from autolev.core.config import Settings, settings as default_settings
from autolev.core.errors import ExchangeError
from autolev.core.user_settings import UserSettings
from autolev.exchange.gateway import Credentials, MarketGateway
from autolev.exchange.price_stream import PriceBook, TickerStream
from autolev.execution.executor import OrderExecutor
from autolev.execution.position_manager import PositionManager
from autolev.execution.trailing import TrailingBook
from autolev.ops.events import Event, EventBus, EventType, LogNotifier, Notifier
from autolev.ops.report import build_daily_report, report_headline
from autolev.persistence.audit import Audit
from autolev.persistence.db import DB
from autolev.persistence.settings_store import SettingsStore
from autolev.persistence.trade_log import TradeLog
from autolev.risk.performance import PerformanceTracker
from autolev.runner.allocator import PortfolioAllocator, ScanResult
from autolev.runner.models import UserSession
from autolev.runner.scheduler import Scheduler
from autolev.strategy.evaluator import OpportunityEvaluator
from autolev.strategy.sentiment import CachedSentiment, NeutralSentiment, SentimentProvider

log = logging.getLogger("autolev.agent")


class UnknownSession(KeyError):
    """No credentials registered for this user."""


class TradingAgent:
    """
    Owns the shared services and one UserSession per user.

    Everything here runs on a single event loop; per-user work is driven by
    the scheduler (scan, monitor, report) and serialized per symbol by the
    trailing book.
    """

    def __init__(
        self,
        cfg: Settings | None = None,
        *,
        db: DB | None = None,
        gateway=None,
        sentiment: SentimentProvider | None = None,
        notifiers: Optional[List[Notifier]] = None,
        clock=time.time,
    ):
        self.cfg = cfg or default_settings
        self._clock = clock

        self.db = db or DB(self.cfg.DB_PATH)
        self.audit = Audit(self.db, self.cfg.AUDIT_JSONL_PATH or None)
        self.settings_store = SettingsStore(self.db)
        self.trade_log = TradeLog(self.db)

        self.gateway = gateway or MarketGateway(cfg=self.cfg)
        self.price_book = PriceBook()
        self.book = TrailingBook()
        self.performance = PerformanceTracker(self.trade_log, window=self.cfg.PERFORMANCE_WINDOW)
        self.events = EventBus(audit=self.audit, notifiers=notifiers if notifiers is not None else [LogNotifier()])
        self.executor = OrderExecutor(self.gateway, audit=self.audit)
        self.manager = PositionManager(
            self.gateway,
            self.executor,
            self.book,
            self.performance,
            self.events,
            price_book=self.price_book,
            cfg=self.cfg,
            clock=clock,
        )
        self.evaluator = OpportunityEvaluator(
            self.gateway,
            CachedSentiment(sentiment or NeutralSentiment(), ttl_seconds=self.cfg.SENTIMENT_TTL_SECONDS),
            cfg=self.cfg,
        )
        self.allocator = PortfolioAllocator(
            self.gateway,
            self.evaluator,
            self.executor,
            self.manager,
            self.book,
            self.performance,
            self.events,
            cfg=self.cfg,
            on_insufficient_funds=self._schedule_recheck,
        )
        self.scheduler = Scheduler()
        self.sessions: Dict[str, UserSession] = {}
        self._stream_task: Optional[asyncio.Task] = None

    # ---------------- SESSIONS ----------------

    def session(self, user_id: str) -> UserSession:
        s = self.sessions.get(user_id)
        if s is None:
            raise UnknownSession(user_id)
        return s

    def register_credentials(self, user_id: str, api_key: str, api_secret: str) -> UserSession:
        """Create (or replace) the user's session; persisted settings are loaded."""
        old = self.sessions.get(user_id)
        if old is not None:
            self.stop_trading(user_id)
            if hasattr(self.gateway, "forget"):
                self.gateway.forget(old.credentials)

        session = UserSession(
            user_id=user_id,
            credentials=Credentials(api_key=api_key, api_secret=api_secret),
            settings=self.settings_store.load(user_id),
        )
        self.sessions[user_id] = session
        self.audit.event(event_type="SESSION", user_id=user_id, message="credentials registered")
        return session

    # ---------------- START / STOP ----------------

    async def _prepare_position_mode(self, session: UserSession) -> None:
        creds = session.credentials
        session.dual_side = await self.gateway.get_position_mode(creds)
        if session.settings.hedging_enabled and not session.dual_side:
            try:
                await self.gateway.set_position_mode(creds, True)
                session.dual_side = True
            except ExchangeError as e:
                # the exchange refuses while positions or orders are open
                log.warning("could not switch %s to dual-side mode, hedging off: %s", session.user_id, e)

    async def start_trading(self, user_id: str) -> UserSession:
        session = self.session(user_id)
        if session.active:
            return session

        await self._prepare_position_mode(session)
        session.active = True
        session.started_at = self._clock()

        key = lambda purpose: (user_id, purpose)  # noqa: E731
        self.scheduler.every(key("monitor"), self.cfg.MONITOR_INTERVAL_SECONDS, lambda: self._monitor(session))
        self.scheduler.every(key("scan"), self.cfg.SCAN_INTERVAL_SECONDS, lambda: self._scan(session))
        self.scheduler.every(
            key("report"),
            self.cfg.REPORT_INTERVAL_SECONDS,
            lambda: self._report(session),
            run_immediately=False,
        )
        log.info("trading started for %s (dual_side=%s)", user_id, session.dual_side)
        return session

    def stop_trading(self, user_id: str) -> bool:
        """No scheduled work for the user runs after this returns. Positions stay open."""
        session = self.sessions.get(user_id)
        cancelled = self.scheduler.cancel_user(user_id)
        if session is None or not session.active:
            return False
        session.active = False
        log.info("trading stopped for %s (%d tasks cancelled)", user_id, cancelled)
        return True

    async def shutdown(self) -> None:
        for s in self.sessions.values():
            s.active = False
        await self.scheduler.cancel_all()
        if self._stream_task is not None:
            self._stream_task.cancel()
            await asyncio.gather(self._stream_task, return_exceptions=True)
            self._stream_task = None
        await self.events.drain()

    def start_stream(self) -> Optional[asyncio.Task]:
        if not self.cfg.STREAM_ENABLED or self._stream_task is not None:
            return self._stream_task
        stream = TickerStream(self.cfg.BINANCE_WS_URL, self.price_book)
        self._stream_task = asyncio.get_running_loop().create_task(stream.run(), name="price-stream")
        return self._stream_task

    # ---------------- SCHEDULED JOBS ----------------

    async def _monitor(self, session: UserSession) -> None:
        await self.manager.monitor(session)
        session.last_monitor_at = self._clock()

    async def _scan(self, session: UserSession) -> ScanResult:
        result = await self.allocator.scan(session)
        session.last_scan_at = self._clock()
        if result.opened or result.skipped:
            log.info("scan %s: opened=%s skipped=%s", session.user_id, result.opened, result.skipped)
        return result

    def _schedule_recheck(self, session: UserSession) -> None:
        if not session.active:
            return
        self.scheduler.later(
            (session.user_id, "recheck"),
            self.cfg.INSUFFICIENT_FUNDS_COOLDOWN_SECONDS,
            lambda: self._scan(session),
        )

    async def _report(self, session: UserSession) -> Dict[str, Any]:
        report = await self.daily_report(session.user_id)
        self.events.emit(
            Event(
                EventType.DAILY_REPORT,
                session.user_id,
                report_headline(report, self.cfg.QUOTE_ASSET),
                details=report,
            )
        )
        return report

    # ---------------- USER OPERATIONS ----------------

    def get_settings(self, user_id: str) -> UserSettings:
        return self.session(user_id).settings

    def update_settings(self, user_id: str, patch: Mapping[str, Any], *, replace: bool = False) -> UserSettings:
        """
        Validate and persist. Unknown keys raise UnknownSettingError and
        invalid values raise pydantic's ValidationError; nothing is stored
        in either case.
        """
        session = self.session(user_id)
        if replace:
            new = UserSettings.from_document(patch)
        else:
            new = session.settings.merged(patch)
        self.settings_store.save(user_id, new)
        session.settings = new
        return new

    async def close_positions(self, user_id: str, symbol: str = "ALL") -> Dict[str, bool]:
        session = self.session(user_id)
        if symbol.upper() == "ALL":
            return await self.manager.close_all(session)
        return {symbol.upper(): await self.manager.close_symbol(session, symbol)}

    async def positions(self, user_id: str) -> List[Dict[str, Any]]:
        session = self.session(user_id)
        account = await self.gateway.get_account(session.credentials)
        out = []
        for p in account.positions:
            row: Dict[str, Any] = {
                "symbol": p.symbol,
                "side": p.side,
                "quantity": p.quantity,
                "entry_price": p.entry_price,
                "mark_price": p.mark_price,
                "leverage": p.leverage,
                "unrealized_pnl": p.unrealized_profit,
                "lifecycle": self.book.lifecycle(user_id, p.symbol, position_open=True).value,
                "managed": False,
            }
            state = self.book.get(user_id, p.symbol)
            if state is not None and state.side == p.side:
                row.update(
                    managed=True,
                    stop_loss=state.stop_loss,
                    take_profit1=state.take_profit1,
                    take_profit2=state.take_profit2,
                    trailing_take_profit=state.trailing_take_profit,
                    partial_closed1=state.partial_closed1,
                    partial_closed2=state.partial_closed2,
                    hedged=state.hedge is not None,
                    reentries=state.reentries,
                )
            out.append(row)
        return out

    async def daily_report(self, user_id: str) -> Dict[str, Any]:
        session = self.session(user_id)
        account = await self.gateway.get_account(session.credentials)
        return build_daily_report(
            account,
            quote_asset=self.cfg.QUOTE_ASSET,
            performance_ratio=self.performance.ratio(user_id),
            day_summary=self.trade_log.summary_since(user_id, hours=24),
        )

    def status(self, user_id: str) -> Dict[str, Any]:
        s = self.session(user_id)
        return {
            "user_id": s.user_id,
            "active": s.active,
            "dual_side": s.dual_side,
            "started_at": s.started_at,
            "last_scan_at": s.last_scan_at,
            "last_monitor_at": s.last_monitor_at,
            "managed": sorted(st.symbol for st in self.book.states(user_id)),
            "tasks": [purpose for _, purpose in self.scheduler.active_keys(user_id)],
        }
