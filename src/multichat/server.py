"""HTTP and WebSocket server exposing the hub and the control surface."""

import logging

from aiohttp import web

from .api.twitch import TwitchBadgeApi
from .chat.badges import BadgeCache
from .chat.hub import BroadcastHub
from .chat.supervisor import AdapterSupervisor
from .core.models import Platform
from .core.settings import Settings

logger = logging.getLogger(__name__)

SETTINGS_KEY = web.AppKey("settings", Settings)
HUB_KEY = web.AppKey("hub", BroadcastHub)
BADGES_KEY = web.AppKey("badges", BadgeCache)
SUPERVISOR_KEY = web.AppKey("supervisor", AdapterSupervisor)

INFO_TEXT = "multichat server: connect a WebSocket client to this URL for chat events.\n"


def _parse_platform(value: str) -> Platform | None:
    try:
        return Platform(value.lower())
    except ValueError:
        return None


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        response = await handler(request)
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


async def handle_root(request: web.Request) -> web.StreamResponse:
    """Upgrade display clients to a WebSocket; plain text for anything else."""
    ws = web.WebSocketResponse(heartbeat=30)
    if not ws.can_prepare(request).ok:
        return web.Response(text=INFO_TEXT)
    await ws.prepare(request)
    await request.app[HUB_KEY].serve(ws)
    return ws


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"ok": True})


async def handle_status(request: web.Request) -> web.Response:
    return web.json_response(request.app[SUPERVISOR_KEY].status_payloads())


async def handle_start(request: web.Request) -> web.Response:
    supervisor = request.app[SUPERVISOR_KEY]
    platform = _parse_platform(request.match_info["platform"])
    if platform is None:
        return web.json_response(
            {"success": False, "error": f"Unknown platform: {request.match_info['platform']}"},
            status=400,
        )

    handle = supervisor.handle(platform)
    if not handle.configured:
        return web.json_response(
            {
                "success": False,
                "error": handle.status.message or f"{platform.value} adapter not initialized",
                "status": handle.status.to_payload(),
            },
            status=400,
        )

    logger.info(f"Control: start {platform.value}")
    success = await supervisor.start(platform)
    return web.json_response(
        {"success": success, "status": supervisor.status(platform).to_payload()}
    )


async def handle_stop(request: web.Request) -> web.Response:
    supervisor = request.app[SUPERVISOR_KEY]
    platform = _parse_platform(request.match_info["platform"])
    if platform is None:
        return web.json_response(
            {"success": False, "error": f"Unknown platform: {request.match_info['platform']}"},
            status=400,
        )

    logger.info(f"Control: stop {platform.value}")
    await supervisor.stop(platform)
    return web.json_response(
        {"success": True, "status": supervisor.status(platform).to_payload()}
    )


async def handle_badges(request: web.Request) -> web.Response:
    channel = request.match_info["channel"].strip()
    if not channel:
        return web.json_response({"error": "Channel parameter is required"}, status=400)

    catalog = await request.app[BADGES_KEY].fetch(channel)
    if catalog is None:
        return web.json_response(
            {"error": f"Failed to fetch badges for channel {channel}"}, status=404
        )
    return web.json_response(catalog.to_payload())


async def on_startup(app: web.Application) -> None:
    supervisor = app[SUPERVISOR_KEY]
    catalog = await supervisor.fetch_badges()
    if catalog is not None:
        logger.info(f"Badge catalog ready for {catalog.channel}")
    started = supervisor.autostart()
    logger.info(f"Autostarting {len(started)} adapter(s)")


async def on_shutdown(app: web.Application) -> None:
    settings = app[SETTINGS_KEY]
    logger.info("Shutting down")
    await app[SUPERVISOR_KEY].shutdown(timeout=settings.server.shutdown_timeout)
    await app[HUB_KEY].close()
    await app[BADGES_KEY].close()


def create_app(
    settings: Settings,
    supervisor: AdapterSupervisor | None = None,
    hub: BroadcastHub | None = None,
    badges: BadgeCache | None = None,
) -> web.Application:
    """Build the application with its hub, badge cache and supervisor."""
    hub = hub or BroadcastHub(queue_size=settings.server.client_queue_size)
    badges = badges or BadgeCache(
        TwitchBadgeApi(settings.twitch.client_id, settings.twitch.oauth_token)
    )
    supervisor = supervisor or AdapterSupervisor(settings, hub, badges)

    app = web.Application(middlewares=[cors_middleware])
    app[SETTINGS_KEY] = settings
    app[HUB_KEY] = hub
    app[BADGES_KEY] = badges
    app[SUPERVISOR_KEY] = supervisor

    app.router.add_get("/", handle_root)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/api/status", handle_status)
    app.router.add_post("/api/{platform}/start", handle_start)
    app.router.add_post("/api/{platform}/stop", handle_stop)
    app.router.add_get("/api/badges/{channel}", handle_badges)

    app.on_startup.append(on_startup)
    app.on_shutdown.append(on_shutdown)
    return app
