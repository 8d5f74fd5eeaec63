import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from config import Settings, load_config
from monitoring.logging_utils import setup_logging
from strategy.errors import InvalidOrder, NoPosition, OverridesLocked


class PercentOverride(BaseModel):
    targetPct: Optional[float] = Field(default=None, ge=0)
    stopPct: Optional[float] = Field(default=None, ge=0)
    trailPct: Optional[float] = Field(default=0.0, ge=0)


class AbsoluteOverride(BaseModel):
    target: Optional[float] = Field(default=None, gt=0)
    stop: Optional[float] = Field(default=None, ge=0)
    trailPct: Optional[float] = Field(default=None, ge=0)


class DryOrder(BaseModel):
    symbol: str
    qty: float
    price: float
    note: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _numeric(row: Dict[str, str], text_fields=('ts', 'session', 'symbol', 'side', 'reason', 'mode')) -> Dict:
    out: Dict = {}
    for key, value in row.items():
        if key in text_fields:
            out[key] = value
            continue
        try:
            out[key] = float(value)
        except (TypeError, ValueError):
            out[key] = value
    return out


def get_system(request: Request):
    system = getattr(request.app.state, 'system', None)
    if system is None:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return system


def require_token(request: Request, authorization: Optional[str] = Header(default=None)):
    system = get_system(request)
    expected = system.settings.api.token
    if not expected:
        return
    token = authorization[7:] if authorization and authorization.startswith('Bearer ') else ''
    if token != expected:
        raise HTTPException(status_code=401, detail="unauthorized")


def require_dry_run(system=Depends(get_system)):
    if not system.execution.paper_mode:
        raise HTTPException(status_code=404, detail="Dry-run routes are disabled in live mode")
    return system


def create_app(system=None, run_engine: bool = True) -> FastAPI:
    """Build the control API; without ``system`` one is created from the config file at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.system is None:
            from main import TradingSystem
            settings = Settings.from_config(load_config())
            setup_logging(log_file=settings.files.log_file)
            app.state.system = TradingSystem(settings)
        task = asyncio.create_task(app.state.system.start()) if run_engine else None
        try:
            yield
        finally:
            if task is not None:
                await app.state.system.stop()
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="Momentum Bracket API", version="1.0.0", lifespan=lifespan)
    app.state.system = system

    @app.get("/favicon.ico")
    async def favicon():
        return Response(content=b"", media_type="image/x-icon")

    @app.get("/health")
    async def health(request: Request):
        current = getattr(request.app.state, 'system', None)
        return {
            "status": "healthy",
            "timestamp": _now(),
            "system_running": current.running if current else False,
            "mode": current.mode if current else None,
        }

    @app.get("/api/status")
    async def status(system=Depends(get_system)):
        return {**system.status(), "timestamp": _now()}

    # ---------- overrides ----------

    @app.get("/api/overrides")
    async def list_overrides(system=Depends(get_system)):
        records = await system.overrides.all()
        return {"overrides": {symbol: record.to_dict() for symbol, record in records.items()}}

    @app.post("/api/overrides/{symbol}/percent", dependencies=[Depends(require_token)])
    async def set_percent(symbol: str, body: PercentOverride, system=Depends(get_system)):
        if body.targetPct is None and body.stopPct is None:
            raise HTTPException(status_code=400, detail="targetPct or stopPct required")
        try:
            record = await system.overrides.set_percent(symbol, body.targetPct, body.stopPct, body.trailPct)
        except OverridesLocked as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"ok": True, "symbol": symbol.upper(), "override": record.to_dict()}

    @app.post("/api/overrides/{symbol}/absolute", dependencies=[Depends(require_token)])
    async def set_absolute(symbol: str, body: AbsoluteOverride, system=Depends(get_system)):
        if body.target is None and body.stop is None:
            raise HTTPException(status_code=400, detail="target or stop required")
        try:
            record = await system.overrides.set_absolute(symbol, body.target, body.stop, body.trailPct)
        except OverridesLocked as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"ok": True, "symbol": symbol.upper(), "override": record.to_dict()}

    @app.delete("/api/overrides/{symbol}", dependencies=[Depends(require_token)])
    async def delete_override(symbol: str, system=Depends(get_system)):
        removed = await system.overrides.remove(symbol)
        if not removed:
            raise HTTPException(status_code=404, detail=f"No override for {symbol.upper()}")
        return {"ok": True, "symbol": symbol.upper()}

    # ---------- journals ----------

    @app.get("/api/trades")
    async def trades(limit: int = Query(default=200, ge=0, le=1000), system=Depends(get_system)):
        rows = [_numeric(row) for row in system.journal.read_trades()]
        rows.sort(key=lambda r: r.get('ts', ''), reverse=True)
        return {"data": rows[:limit], "total": len(rows)}

    @app.get("/api/mtm")
    async def mtm(system=Depends(get_system)):
        latest: Dict[str, Dict] = {}
        for row in system.journal.read_marks():
            latest[row['symbol']] = _numeric(row)
        realized: Dict[str, float] = {}
        for row in system.journal.read_trades():
            try:
                realized[row['symbol']] = realized.get(row['symbol'], 0.0) + float(row['realized_pnl'])
            except (KeyError, TypeError, ValueError):
                continue
        payload = {}
        for symbol, mark in latest.items():
            unreal = mark.get('unreal_pnl') if isinstance(mark.get('unreal_pnl'), float) else 0.0
            payload[symbol] = {
                **mark,
                "realized_pnl": realized.get(symbol, 0.0),
                "total_pnl": unreal + realized.get(symbol, 0.0),
            }
        return {"data": payload, "ts": _now()}

    @app.get("/api/mtm_series")
    async def mtm_series(
        symbol: str,
        limit: int = Query(default=200, ge=10, le=2000),
        system=Depends(get_system),
    ):
        symbol = symbol.upper()
        rows = [
            {"ts": row['ts'], "price": float(row['price']), "unreal_pnl": float(row['unreal_pnl'])}
            for row in system.journal.read_marks()
            if row.get('symbol') == symbol
        ]
        return {"symbol": symbol, "data": rows[-limit:]}

    @app.post("/api/reset", dependencies=[Depends(require_token)])
    async def reset_journals(system=Depends(get_system)):
        system.journal.reset()
        return {"ok": True, "reset": [system.journal.trades_path.name, system.journal.marks_path.name]}

    # ---------- closures ----------

    @app.get("/api/closures")
    async def closures(system=Depends(get_system)):
        return {"closures": system.bracket.closures(), "positions": system.bracket.snapshot()}

    @app.post("/api/instruments/{symbol}/reset", dependencies=[Depends(require_token)])
    async def reset_instrument(symbol: str, system=Depends(get_system)):
        if not system.reset_instrument(symbol):
            raise HTTPException(status_code=404, detail=f"{symbol.upper()} is not closed")
        return {"ok": True, "symbol": symbol.upper()}

    # ---------- dry-run ledger ----------

    @app.post("/api/dry/open", dependencies=[Depends(require_token)])
    async def dry_open(body: DryOrder, system=Depends(require_dry_run)):
        try:
            position = await system.ledger.open(body.symbol, body.qty, body.price, body.note or "api-open")
        except InvalidOrder as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "symbol": position.symbol, "position": position.as_dict()}

    @app.post("/api/dry/close", dependencies=[Depends(require_token)])
    async def dry_close(body: DryOrder, system=Depends(require_dry_run)):
        try:
            result = await system.ledger.close(body.symbol, body.qty, body.price, body.note or "api-close")
        except InvalidOrder as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except NoPosition as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {
            "ok": True,
            "symbol": result.symbol,
            "closed_qty": result.closed_qty,
            "fill_price": result.fill_price,
            "realized_pnl": result.realized_pnl,
            "remaining_qty": result.remaining_qty,
        }

    @app.get("/api/dry/positions")
    async def dry_positions(system=Depends(require_dry_run)):
        positions = await system.ledger.list_positions()
        return {"positions": {symbol: pos.as_dict() for symbol, pos in positions.items()}}

    @app.get("/api/dry/journal")
    async def dry_journal(system=Depends(require_dry_run)):
        return await system.ledger.journal()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    api_settings = Settings.from_config(load_config()).api
    uvicorn.run(
        app,
        host=api_settings.host,
        port=api_settings.port,
        log_level="info"
    )
