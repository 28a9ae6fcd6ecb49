"""REST API endpoint handlers — read-only fleet state."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import structlog
from aiohttp import web

from botfleet.api import ctx_key

log = structlog.get_logger()

API_VERSION = "1.0.0"

# JSON string columns decoded before responding, to avoid double-encoding
JSON_FIELDS = (
    "strategy_config", "metrics", "matrix_best_cell", "payload", "result", "detail",
    "metadata", "gates_snapshot", "blocker_codes", "metrics_snapshot", "breakdown",
)


def _safe_int(value: str, default: int) -> int:
    """Parse int from query param, returning default on failure."""
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _envelope(data) -> dict:
    return {
        "data": data,
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": API_VERSION,
        },
    }


def _error_envelope(code: str, message: str) -> dict:
    return {
        "error": {"code": code, "message": message},
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": API_VERSION,
        },
    }


def _parse_json_fields(row: dict) -> dict:
    row = dict(row)
    for name in JSON_FIELDS:
        val = row.get(name)
        if isinstance(val, str):
            try:
                row[name] = json.loads(val)
            except (json.JSONDecodeError, ValueError):
                pass  # Keep as string if not valid JSON
    return row


async def health_handler(request: web.Request) -> web.Response:
    return web.json_response(_envelope({"status": "ok"}))


async def status_handler(request: web.Request) -> web.Response:
    ctx = request.app[ctx_key]
    storage = ctx["storage"]
    data = dict(ctx["status_fn"]())
    data["uptime_seconds"] = (datetime.now(timezone.utc) - ctx["started_at"]).total_seconds()
    data["queue"] = await storage.queue_depth()
    return web.json_response(_envelope(data))


async def bots_handler(request: web.Request) -> web.Response:
    storage = request.app[ctx_key]["storage"]
    include_inactive = request.query.get("all", "") in ("1", "true")
    stage = request.query.get("stage")

    bots = []
    for bot in await storage.list_bots(include_inactive=include_inactive):
        if stage and bot["stage"] != stage:
            continue
        row = _parse_json_fields(bot)
        score = await storage.get_autonomy_score(bot["id"])
        row["autonomy"] = {"score": score["score"], "tier": score["tier"]} if score else None
        bots.append(row)
    return web.json_response(_envelope(bots))


async def bot_detail_handler(request: web.Request) -> web.Response:
    storage = request.app[ctx_key]["storage"]
    bot_id = request.match_info["bot_id"]
    bot = await storage.get_bot(bot_id)
    if not bot:
        return web.json_response(_error_envelope("not_found", f"Unknown bot: {bot_id}"), status=404)

    score = await storage.get_autonomy_score(bot_id)
    data = {
        "bot": _parse_json_fields(bot),
        "autonomy": _parse_json_fields(score) if score else None,
        "instances": await storage.get_instances(bot_id),
        "generations": [_parse_json_fields(g) for g in await storage.get_generations(bot_id)],
        "audit_trail": [_parse_json_fields(a) for a in await storage.get_audit_trail(bot_id)],
        "jobs": [_parse_json_fields(j) for j in await storage.get_jobs(bot_id=bot_id, limit=20, newest_first=True)],
    }
    return web.json_response(_envelope(data))


async def jobs_handler(request: web.Request) -> web.Response:
    storage = request.app[ctx_key]["storage"]
    limit = min(_safe_int(request.query.get("limit", "50"), 50), 500)
    jobs = await storage.get_jobs(
        status=request.query.get("status"),
        job_type=request.query.get("job_type"),
        bot_id=request.query.get("bot_id"),
        limit=limit,
        newest_first=True,
    )
    return web.json_response(_envelope([_parse_json_fields(j) for j in jobs]))


async def job_events_handler(request: web.Request) -> web.Response:
    storage = request.app[ctx_key]["storage"]
    job_id = _safe_int(request.match_info["job_id"], 0)
    job = await storage.get_job(job_id)
    if not job:
        return web.json_response(_error_envelope("not_found", f"Unknown job: {job_id}"), status=404)
    data = {
        "job": _parse_json_fields(job),
        "events": [_parse_json_fields(e) for e in await storage.get_job_events(job_id)],
    }
    return web.json_response(_envelope(data))


async def activity_handler(request: web.Request) -> web.Response:
    activity = request.app[ctx_key]["activity"]
    rows = await activity.query(
        limit=_safe_int(request.query.get("limit", "50"), 50),
        category=request.query.get("category"),
        severity=request.query.get("severity"),
        bot_id=request.query.get("bot_id"),
    )
    return web.json_response(_envelope([_parse_json_fields(r) for r in rows]))


def setup_routes(app: web.Application) -> None:
    """Register all REST API routes."""
    app.router.add_get("/v1/health", health_handler)
    app.router.add_get("/v1/status", status_handler)
    app.router.add_get("/v1/bots", bots_handler)
    app.router.add_get("/v1/bots/{bot_id}", bot_detail_handler)
    app.router.add_get("/v1/jobs", jobs_handler)
    app.router.add_get("/v1/jobs/{job_id}", job_events_handler)
    app.router.add_get("/v1/activity", activity_handler)
