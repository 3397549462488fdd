"""Liveness and per-account status."""

from __future__ import annotations

from fastapi import APIRouter, Request

from padbridge import __version__

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    manager = getattr(request.app.state, "monitor_manager", None)
    accounts = {}
    if manager is not None:
        accounts = {account_id: status.to_dict() for account_id, status in manager.statuses.items()}
    return {"status": "ok", "version": __version__, "accounts": accounts}
