import logging
from typing import Any, Dict

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from autolev.core.config import settings
from autolev.core.errors import ExchangeError, TradeValidationError, UnknownSettingError
from autolev.core.log import setup_logging
from autolev.runner.runner import TradingAgent, UnknownSession

log = logging.getLogger("autolev.api")

app = FastAPI(title="autolev trading agent")
agent_instance: TradingAgent | None = None


def get_agent() -> TradingAgent:
    global agent_instance
    if agent_instance is None:
        agent_instance = TradingAgent(settings)
    return agent_instance


class CredentialsBody(BaseModel):
    api_key: str
    api_secret: str


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    setup_logging(settings.LOG_LEVEL)
    try:
        for w in settings.validate_runtime():
            log.warning("config: %s", w)
    except ValueError as e:
        # refuse to run with a dangerous config
        log.error("%s", e)
        raise


@app.on_event("startup")
async def _startup_stream():
    get_agent().start_stream()


@app.on_event("shutdown")
async def _shutdown_agent():
    if agent_instance is not None:
        await agent_instance.shutdown()


def _session_or_404(user_id: str):
    try:
        return get_agent().session(user_id)
    except UnknownSession:
        raise HTTPException(status_code=404, detail=f"no credentials registered for {user_id}")


def _settings_error(e: Exception) -> HTTPException:
    if isinstance(e, UnknownSettingError):
        return HTTPException(status_code=400, detail={"unknown_keys": e.keys})
    if isinstance(e, ValidationError):
        errors = [
            {"loc": [str(x) for x in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in e.errors()
        ]
        return HTTPException(status_code=400, detail={"invalid": errors})
    return HTTPException(status_code=400, detail=str(e))


@app.get("/")
def root():
    return {"status": "ok", "env": settings.BINANCE_ENV}


@app.get("/health")
def health():
    agent = get_agent()
    return {
        "status": "ok",
        "sessions": len(agent.sessions),
        "active": sorted(uid for uid, s in agent.sessions.items() if s.active),
        "prices_tracked": len(agent.price_book),
    }


@app.post("/users/{user_id}/credentials")
def register_credentials(user_id: str, body: CredentialsBody):
    session = get_agent().register_credentials(user_id, body.api_key, body.api_secret)
    return {"status": "registered", "user_id": session.user_id}


@app.post("/users/{user_id}/start")
async def start_trading(user_id: str):
    _session_or_404(user_id)
    try:
        await get_agent().start_trading(user_id)
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"status": "started", **get_agent().status(user_id)}


@app.post("/users/{user_id}/stop")
def stop_trading(user_id: str):
    _session_or_404(user_id)
    stopped = get_agent().stop_trading(user_id)
    return {"status": "stopped" if stopped else "not_running", **get_agent().status(user_id)}


@app.get("/users/{user_id}/status")
def user_status(user_id: str):
    _session_or_404(user_id)
    return get_agent().status(user_id)


@app.get("/users/{user_id}/settings")
def get_settings(user_id: str):
    return _session_or_404(user_id).settings.model_dump()


@app.put("/users/{user_id}/settings")
def replace_settings(user_id: str, doc: Dict[str, Any] = Body(...)):
    _session_or_404(user_id)
    try:
        new = get_agent().update_settings(user_id, doc, replace=True)
    except (UnknownSettingError, ValidationError, ValueError) as e:
        raise _settings_error(e)
    return new.model_dump()


@app.patch("/users/{user_id}/settings")
def patch_settings(user_id: str, patch: Dict[str, Any] = Body(...)):
    _session_or_404(user_id)
    try:
        new = get_agent().update_settings(user_id, patch)
    except (UnknownSettingError, ValidationError, ValueError) as e:
        raise _settings_error(e)
    return new.model_dump()


@app.get("/users/{user_id}/positions")
async def positions(user_id: str):
    _session_or_404(user_id)
    try:
        return {"positions": await get_agent().positions(user_id)}
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/users/{user_id}/close/{symbol}")
async def close_position(user_id: str, symbol: str):
    _session_or_404(user_id)
    try:
        closed = await get_agent().close_positions(user_id, symbol)
    except TradeValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"closed": closed}


@app.get("/users/{user_id}/report")
async def daily_report(user_id: str):
    _session_or_404(user_id)
    try:
        return await get_agent().daily_report(user_id)
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.get("/users/{user_id}/events")
def recent_events(user_id: str, limit: int = 50):
    return {"events": get_agent().audit.recent(user_id, limit)}
