"""aiohttp surface: health, metrics, short-link redirects and agent endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict

from aiohttp import web

from agents.protocol import AgentRequest
from growth.links import ClickMetadata
from xfactor.metrics import mark_app_ready, metrics_handler, metrics_middleware
from xfactor.types import ErrorCode

from .system import GrowthSystem

logger = logging.getLogger(__name__)

SYSTEM_KEY = web.AppKey("growth_system", GrowthSystem)


async def health_handler(request: web.Request) -> web.Response:
    system = request.app[SYSTEM_KEY]
    agents: Dict[str, Any] = {}
    healthy = True
    for name in system.agents.list_agents():
        health = await system.agents.health(name)
        agents[name] = {"healthy": health.healthy, "circuit_breaker": health.circuit_breaker_state}
        healthy = healthy and health.healthy
    payload = {
        "status": "ok" if healthy else "degraded",
        "agents": agents,
        "loops": system.registry.stats(),
        "events": len(system.bus.log),
    }
    return web.json_response(payload, status=200 if healthy else 503)


async def redirect_handler(request: web.Request) -> web.Response:
    system = request.app[SYSTEM_KEY]
    short_code = request.match_info["short_code"]
    resolution = await system.links.resolve(short_code)
    if resolution.link is None:
        status = 410 if resolution.error_code is ErrorCode.LINK_EXPIRED else 404
        return web.json_response(
            {"error": resolution.error_code.value if resolution.error_code else ErrorCode.LINK_INVALID.value},
            status=status,
        )

    await system.links.track_click(
        short_code,
        ClickMetadata(
            timestamp=system.bus.now(),
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote,
            device_id=request.headers.get("X-Device-Id"),
        ),
    )
    raise web.HTTPFound(resolution.link.full_url)


async def agent_handler(request: web.Request) -> web.Response:
    system = request.app[SYSTEM_KEY]
    name = request.match_info["agent"]
    if name not in system.agents.list_agents():
        return web.json_response({"error": "unknown_agent"}, status=404)
    try:
        data = await request.json()
    except ValueError:
        return web.json_response({"error": "invalid_json"}, status=400)
    if not isinstance(data, dict):
        return web.json_response({"error": "invalid_envelope"}, status=400)
    response = await system.agents.call(name, AgentRequest.from_dict(data))
    return web.json_response(response.to_dict())


async def agent_health_handler(request: web.Request) -> web.Response:
    system = request.app[SYSTEM_KEY]
    health = await system.agents.health(request.match_info["agent"])
    if not health.exists:
        return web.json_response({"error": "unknown_agent"}, status=404)
    return web.json_response({"healthy": health.healthy, "circuit_breaker": health.circuit_breaker_state})


def create_app(system: GrowthSystem) -> web.Application:
    app = web.Application(middlewares=[metrics_middleware])
    app[SYSTEM_KEY] = system
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/l/{short_code}", redirect_handler)
    app.router.add_post("/agents/{agent}", agent_handler)
    app.router.add_get("/agents/{agent}/health", agent_health_handler)
    mark_app_ready()
    return app


async def start_app(system: GrowthSystem, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(create_app(system))
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()
    logger.info("growth service listening on http://%s:%s", host, port)
    return runner


__all__ = ["SYSTEM_KEY", "create_app", "start_app"]
