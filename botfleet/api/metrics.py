"""Prometheus /metrics endpoint — exports queue, capacity, leadership and supervision gauges."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone

import structlog
from aiohttp import web
from prometheus_client import CollectorRegistry, Gauge, Info, generate_latest

from botfleet.api import ctx_key
from botfleet.api.routes import API_VERSION

log = structlog.get_logger()

# Custom registry avoids pytest conflicts with the global default registry.
registry = CollectorRegistry()

# --- Queue gauges ---
queue_jobs = Gauge("bf_queued_jobs", "Queued jobs by type", ["job_type"], registry=registry)

# --- Fleet gauges ---
bots_by_stage = Gauge("bf_bots", "Active bots by stage", ["stage"], registry=registry)

# --- Capacity gauges ---
heavy_slots = Gauge("bf_heavy_slots", "Concurrent heavy job slots", registry=registry)
light_slots = Gauge("bf_light_slots", "Concurrent light job slots", registry=registry)
available_memory = Gauge("bf_available_memory_mb", "Available memory seen by the governor", registry=registry)

# --- Leadership ---
is_leader = Gauge("bf_is_leader", "This node holds the leader lease (1=yes, 0=no)", registry=registry)
leader_epoch = Gauge("bf_leader_epoch", "Fencing epoch of the held lease", registry=registry)

# --- Supervision ---
open_breakers = Gauge("bf_open_breakers", "Open circuit breakers", ["kind"], registry=registry)
worker_failures = Gauge("bf_worker_consecutive_failures", "Consecutive failures per worker",
                        ["worker"], registry=registry)
backend_circuit = Gauge("bf_backend_circuit_open", "Backend circuit open (1=yes, 0=no)", registry=registry)
uptime = Gauge("bf_uptime_seconds", "Engine uptime in seconds", registry=registry)

system_info = Info("bf_system", "Fleet engine metadata", registry=registry)


async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus scrape endpoint. Reads current state and returns text metrics."""
    ctx = request.app[ctx_key]
    storage = ctx["storage"]

    try:
        status = ctx["status_fn"]()

        queue_jobs._metrics.clear()
        for job_type, count in (await storage.queue_depth()).items():
            queue_jobs.labels(job_type=job_type).set(count)

        bots_by_stage._metrics.clear()
        for stage, count in Counter(b["stage"] for b in await storage.list_bots()).items():
            bots_by_stage.labels(stage=stage).set(count)

        slots = status.get("slots")
        if slots:
            heavy_slots.set(slots["heavy"])
            light_slots.set(slots["light"])
            available_memory.set(slots["available_mb"])

        leader = status.get("leader", {})
        is_leader.set(1 if leader.get("is_leader") else 0)
        leader_epoch.set(leader.get("epoch", 0))

        breakers = status.get("breakers", {})
        for kind, states in breakers.items():
            open_breakers.labels(kind=kind).set(sum(1 for s in states.values() if s.get("is_open")))

        worker_failures._metrics.clear()
        for name, worker in status.get("workers", {}).items():
            worker_failures.labels(worker=name).set(worker.get("failures", 0))

        backend_circuit.set(1 if status.get("backend", {}).get("open") else 0)
        uptime.set((datetime.now(timezone.utc) - ctx["started_at"]).total_seconds())
        system_info.info({"node_id": str(status.get("node_id", "")), "version": API_VERSION})

    except Exception as e:
        log.error("metrics.collect_error", error=str(e), error_type=type(e).__name__)

    output = generate_latest(registry)
    resp = web.Response(body=output)
    resp.content_type = "text/plain"
    resp.headers["Content-Type"] = "text/plain; version=0.0.4; charset=utf-8"
    return resp
