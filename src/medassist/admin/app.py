from __future__ import annotations

import asyncio
import time
from datetime import timezone
from typing import Any

from fastapi import Depends, FastAPI
from fastapi.responses import PlainTextResponse

import medassist.storage.db_config as db_config
from medassist.config.settings import ENABLE_TELEGRAM_BOT_POLLING
from medassist.logger import logger
from medassist.metrics import runtime_metrics

from .auth import require_admin_auth
from .schemas import PendingItem, RuntimeControl, SchedulerRunRequest, ShutdownRequest


def create_app(control: RuntimeControl) -> FastAPI:
    app = FastAPI(title="Medassist Admin API", version="1.0.0")

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "now_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "db_connected": db_config.conn is not None,
            "shutdown_requested": control.shutdown_event.is_set(),
            "restart_requested": control.restart_event.is_set(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/metrics", dependencies=[Depends(require_admin_auth)])
    async def get_metrics() -> dict[str, Any]:
        return {
            "runtime": runtime_metrics.snapshot(),
            "components": {
                "db": {"connected": db_config.conn is not None},
                "telegram": {"enabled": ENABLE_TELEGRAM_BOT_POLLING},
                "reminder": control.scheduler.get_status(),
                "sessions": {
                    "total": len(control.sessions),
                    "authenticated": len(control.sessions.authenticated_sessions()),
                },
            },
            "active_tasks": len(asyncio.all_tasks()),
        }

    @app.get("/api/v1/pending", dependencies=[Depends(require_admin_auth)])
    async def get_pending() -> dict[str, Any]:
        entries = sorted(control.scheduler.tracker.all(), key=lambda e: e.first_sent_at)
        items = [
            PendingItem(
                reminder_id=e.reminder_id,
                user_id=e.user_id,
                channel_user_id=e.channel_user_id,
                medication_name=e.medication_name,
                dosage=e.dosage,
                first_sent_at=e.first_sent_at,
                last_sent_at=e.last_sent_at,
                message_id=e.message_id,
                resend_count=e.resend_count,
            )
            for e in entries
        ]
        return {"items": items, "total": len(items)}

    def _as_utc(payload: SchedulerRunRequest | None):
        if payload is None or payload.now_utc is None:
            return None
        now = payload.now_utc
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    @app.post("/api/v1/scheduler/tick")
    async def run_tick(
        payload: SchedulerRunRequest | None = None,
        auth_info: dict[str, str] = Depends(require_admin_auth),
    ) -> dict[str, Any]:
        now = _as_utc(payload)
        logger.info(f"收到手动 tick 请求: by={auth_info['user']}, now_utc={now}")
        attempted = await control.scheduler.tick(now)
        return {"ok": True, "action": "tick", "attempted": attempted}

    @app.post("/api/v1/scheduler/resend")
    async def run_resend(
        payload: SchedulerRunRequest | None = None,
        auth_info: dict[str, str] = Depends(require_admin_auth),
    ) -> dict[str, Any]:
        now = _as_utc(payload)
        logger.info(f"收到手动重发请求: by={auth_info['user']}, now_utc={now}")
        attempted = await control.scheduler.sweep_resends(now)
        return {"ok": True, "action": "resend", "attempted": attempted}

    @app.post("/api/v1/restart")
    async def admin_restart(
        payload: ShutdownRequest,
        auth_info: dict[str, str] = Depends(require_admin_auth),
    ) -> dict[str, Any]:
        logger.warning(f"收到远程重启请求: by={auth_info['user']}, reason={payload.reason}")
        control.restart_event.set()
        control.shutdown_event.set()
        return {"ok": True, "action": "restart", "reason": payload.reason}

    @app.post("/api/v1/shutdown")
    async def admin_shutdown(
        payload: ShutdownRequest,
        auth_info: dict[str, str] = Depends(require_admin_auth),
    ) -> dict[str, Any]:
        logger.warning(f"收到远程关闭请求: by={auth_info['user']}, reason={payload.reason}")
        control.shutdown_event.set()
        return {"ok": True, "action": "shutdown", "reason": payload.reason}

    return app
