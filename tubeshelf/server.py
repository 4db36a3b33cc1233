"""HTTP endpoints for clients that poll job status instead of subscribing to events."""
import json
import logging

from aiohttp import web
from pydantic import ValidationError

from ._version import __version__
from .controller import DownloadController
from .exceptions import ConfigurationError, JobNotFoundError
from .schemas import BatchEnqueuePayload, CredentialsPayload, EnqueuePayload, JobResponse

logger = logging.getLogger(__name__)

CONTROLLER = web.AppKey('controller', DownloadController)

routes = web.RouteTableDef()


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Maps application errors to JSON responses."""
    try:
        return await handler(request)
    except ConfigurationError as e:
        return web.json_response({'error': str(e), 'code': e.code}, status=400)
    except JobNotFoundError as e:
        return web.json_response({'error': str(e)}, status=404)
    except ValidationError as e:
        return web.json_response({'error': 'Invalid request', 'details': json.loads(e.json())}, status=422)
    except json.JSONDecodeError:
        return web.json_response({'error': 'Request body must be JSON'}, status=400)


def _controller(request: web.Request) -> DownloadController:
    return request.app[CONTROLLER]


@routes.get('/api/health')
async def health(request: web.Request) -> web.Response:
    return web.json_response({'status': 'healthy', 'version': __version__, **_controller(request).get_stats()})


@routes.get('/api/download')
async def poll_status(request: web.Request) -> web.Response:
    """
    Returns the poll view of one job.

    Query parameters:
        id: The video id.
    """
    job_id = request.query.get('id')
    if not job_id:
        return web.json_response({'status': 'invalid'})
    return web.json_response(_controller(request).get_status(job_id))


@routes.post('/api/download')
async def enqueue(request: web.Request) -> web.Response:
    payload = EnqueuePayload.model_validate(await request.json())
    queued = _controller(request).enqueue(payload.to_request(), confirm_stale=payload.confirm_stale)
    return web.json_response({'queued': queued})


@routes.post('/api/downloads')
async def enqueue_batch(request: web.Request) -> web.Response:
    payload = BatchEnqueuePayload.model_validate(await request.json())
    queued = _controller(request).enqueue_batch(
        [video.to_request() for video in payload.videos], confirm_stale=payload.confirm_stale
    )
    return web.json_response({'queued': queued})


@routes.get('/api/downloads')
async def list_jobs(request: web.Request) -> web.Response:
    controller = _controller(request)
    jobs = [JobResponse.from_job(job).model_dump() for job in controller.list_jobs()]
    return web.json_response({'jobs': jobs, 'total': len(jobs)})


@routes.post('/api/downloads/retry-failed')
async def retry_all_failed(request: web.Request) -> web.Response:
    return web.json_response({'retried': _controller(request).retry_all_failed()})


@routes.post('/api/downloads/cancel-all')
async def cancel_all(request: web.Request) -> web.Response:
    return web.json_response({'cancelled': _controller(request).cancel_all()})


@routes.post('/api/downloads/{job_id}/retry')
async def retry(request: web.Request) -> web.Response:
    return web.json_response({'success': _controller(request).retry(request.match_info['job_id'])})


@routes.post('/api/downloads/{job_id}/redownload')
async def redownload(request: web.Request) -> web.Response:
    return web.json_response({'success': _controller(request).redownload(request.match_info['job_id'])})


@routes.post('/api/downloads/{job_id}/cancel')
async def cancel(request: web.Request) -> web.Response:
    return web.json_response({'success': _controller(request).cancel(request.match_info['job_id'])})


@routes.delete('/api/downloads/{job_id}')
async def remove(request: web.Request) -> web.Response:
    _controller(request).remove(request.match_info['job_id'])
    return web.json_response({'success': True})


@routes.delete('/api/history')
async def clear_history(request: web.Request) -> web.Response:
    return web.json_response({'removed': _controller(request).clear_history()})


@routes.post('/api/credentials')
async def set_credentials(request: web.Request) -> web.Response:
    """Lets the shell flag cookies as possibly stale (or fresh again)."""
    payload = CredentialsPayload.model_validate(await request.json())
    _controller(request).set_credentials_stale(payload.stale)
    return web.json_response({'stale': payload.stale})


def create_app(controller: DownloadController) -> web.Application:
    """Builds the aiohttp application around a controller."""
    app = web.Application(middlewares=[error_middleware])
    app[CONTROLLER] = controller
    app.add_routes(routes)
    return app


async def start_server(controller: DownloadController, host: str, port: int) -> web.AppRunner:
    """
    Serves the HTTP API in the running event loop.

    Returns:
        The runner; call `cleanup()` on it to stop serving.
    """
    runner = web.AppRunner(create_app(controller))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Status API listening on http://{host}:{port}")
    return runner
