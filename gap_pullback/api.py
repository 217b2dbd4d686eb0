"""
Control API: lifecycle commands and read-only views of the watchlist,
positions, signals and trades.

Commands that reach the broker are plain functions so FastAPI runs them in
its threadpool; the views only read the store.
"""
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Query
from fastapi.responses import JSONResponse

from gap_pullback.models import PositionStatus, WatchState, summarize_pnl
from gap_pullback.storage import flatten_entity


def _command_response(res: Dict[str, Any]):
    if not res.get("success"):
        return JSONResponse(status_code=409, content=res)
    return res


def make_router(controller) -> APIRouter:
    router = APIRouter()

    def _trading_date(requested: Optional[date]) -> date:
        return requested or controller.clock.trading_date()

    @router.post("/bot/start")
    def start():
        return _command_response(controller.start())

    @router.post("/bot/stop")
    def stop():
        return _command_response(controller.stop())

    @router.post("/bot/pause")
    def pause():
        return _command_response(controller.pause())

    @router.post("/bot/resume")
    def resume():
        return _command_response(controller.resume())

    @router.post("/bot/emergency-close")
    def emergency_close():
        res = controller.emergency_close_all()
        if not res.get("success"):
            return JSONResponse(status_code=500, content=res)
        return res

    @router.get("/bot/status")
    async def status():
        return controller.status().to_dict()

    @router.get("/bot/watchlist")
    async def watchlist(trading_date: Optional[date] = Query(None, alias="date")):
        trading_date = _trading_date(trading_date)
        records = controller.store.find_watch_records(trading_date)
        return {
            "trading_date": trading_date.isoformat(),
            "records": [flatten_entity(r) for r in records],
        }

    @router.get("/bot/watchlist/state/{state}")
    async def watchlist_by_state(
        state: WatchState,
        trading_date: Optional[date] = Query(None, alias="date")
    ):
        trading_date = _trading_date(trading_date)
        records = controller.store.find_watch_records_by_state(trading_date, [state])
        return {
            "trading_date": trading_date.isoformat(),
            "state": state.value,
            "records": [flatten_entity(r) for r in records],
        }

    @router.get("/bot/positions")
    async def positions():
        return {"positions": [flatten_entity(p) for p in controller.store.find_open_positions()]}

    @router.get("/bot/positions/history")
    async def position_history(trading_date: Optional[date] = Query(None, alias="date")):
        trading_date = _trading_date(trading_date)
        return {
            "trading_date": trading_date.isoformat(),
            "positions": [flatten_entity(p) for p in controller.store.find_positions_by_date(trading_date)],
        }

    @router.get("/bot/positions/closed")
    async def closed_positions(trading_date: Optional[date] = Query(None, alias="date")):
        trading_date = _trading_date(trading_date)
        closed = [
            p for p in controller.store.find_positions_by_date(trading_date)
            if p.status == PositionStatus.CLOSED
        ]
        return {
            "trading_date": trading_date.isoformat(),
            "positions": [flatten_entity(p) for p in closed],
        }

    @router.get("/bot/pnl/summary")
    async def pnl_summary(trading_date: Optional[date] = Query(None, alias="date")):
        trading_date = _trading_date(trading_date)
        summary = summarize_pnl(controller.store.find_positions_by_date(trading_date))
        summary['win_rate'] = str(summary['win_rate'])
        summary['total_realized_pnl'] = str(summary['total_realized_pnl'])
        summary['trading_date'] = trading_date.isoformat()
        return summary

    @router.get("/bot/signals")
    async def signals(
        trading_date: Optional[date] = Query(None, alias="date"),
        code: Optional[str] = Query(None),
        limit: int = Query(100, ge=1)
    ):
        trading_date = _trading_date(trading_date)
        found = controller.store.find_signals(trading_date, code)[:limit]
        return {
            "trading_date": trading_date.isoformat(),
            "signals": [flatten_entity(s) for s in found],
        }

    @router.get("/bot/trades")
    async def trades(
        trading_date: Optional[date] = Query(None, alias="date"),
        code: Optional[str] = Query(None),
        position_id: Optional[str] = Query(None),
        limit: int = Query(50, ge=1)
    ):
        trading_date = _trading_date(trading_date)
        found = [
            t for t in controller.store.find_trades(position_id)
            if t.created_at.date() == trading_date and (code is None or t.code == code)
        ]
        return {
            "trading_date": trading_date.isoformat(),
            "trades": [flatten_entity(t) for t in found[:limit]],
        }

    return router


def create_app(controller) -> FastAPI:
    app = FastAPI(title="Gap Pullback Trader", version="1.0.0")
    app.include_router(make_router(controller))
    return app
