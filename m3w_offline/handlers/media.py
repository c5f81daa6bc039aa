"""
Media worker HTTP handlers.
- /api|guest/songs/{id}/stream|cover → content cache engine
- POST /__worker/message             → worker control messages
- GET  /__worker/status              → active / waiting versions
- anything else                      → passed through to the backend
"""
import logging

from aiohttp import web

from m3w_offline.services.models import MediaRequest

logger = logging.getLogger(__name__)

WORKER_KEY = web.AppKey("media_worker")

routes = web.RouteTableDef()


@routes.get(r"/{prefix:api|guest}/songs/{song_id}/{variant:stream|cover}")
async def serve_media(request: web.Request) -> web.Response:
    worker = request.app[WORKER_KEY]
    media_request = MediaRequest(url=str(request.rel_url), headers=dict(request.headers))
    result = await worker.media_cache.handle_request(media_request)
    headers = {k: v for k, v in result.headers.items() if k.lower() != "content-length"}
    logger.debug(
        "Media request served",
        extra={"path": request.path, "status": result.status, "from_cache": result.from_cache},
    )
    return web.Response(status=result.status, body=result.body, headers=headers)


@routes.post("/__worker/message")
async def post_message(request: web.Request) -> web.Response:
    worker = request.app[WORKER_KEY]
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Ignoring non-JSON worker message")
        return web.json_response({"handled": False}, status=400)
    handled = await worker.post_message(payload)
    return web.json_response({"handled": handled})


@routes.get("/__worker/status")
async def worker_status(request: web.Request) -> web.Response:
    worker = request.app[WORKER_KEY]
    return web.json_response(worker.describe())


@routes.route("*", "/{tail:.*}")
async def passthrough(request: web.Request) -> web.StreamResponse:
    worker = request.app[WORKER_KEY]
    return await worker.passthrough(request)
