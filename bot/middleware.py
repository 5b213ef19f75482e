"""HTTP middleware for authorization and logging."""
import hmac
import logging
from typing import Awaitable, Callable, Iterable

from aiohttp import web

from core.logger import scrub_token

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

WEBHOOK_PREFIX = "/api/telegram/webhook/"


def _loggable_path(path: str) -> str:
    """Request path with a webhook bot token shortened."""
    if path.startswith(WEBHOOK_PREFIX):
        return WEBHOOK_PREFIX + scrub_token(path[len(WEBHOOK_PREFIX):])
    return path


@web.middleware
async def logging_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Log every request with its response status."""
    path = _loggable_path(request.path)
    try:
        response = await handler(request)
    except web.HTTPException as e:
        logger.info(f"{request.method} {path} -> {e.status}")
        raise
    logger.info(f"{request.method} {path} -> {response.status}")
    return response


def bearer_auth_middleware(api_token: str, protected_prefixes: Iterable[str]):
    """
    Create middleware requiring ``Authorization: Bearer <api_token>``.

    Args:
        api_token: Expected token; empty disables the check
        protected_prefixes: Path prefixes that need the token

    Returns:
        aiohttp middleware
    """
    prefixes = tuple(protected_prefixes)

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if not api_token or not request.path.startswith(prefixes):
            return await handler(request)

        header = request.headers.get('Authorization', '')
        scheme, _, supplied = header.partition(' ')
        if scheme.lower() != 'bearer' or not hmac.compare_digest(supplied.strip().encode(), api_token.encode()):
            logger.warning(f"Unauthorized request to {request.path} from {request.remote}")
            return web.json_response({'ok': False, 'message': 'unauthorized'}, status=401)

        return await handler(request)

    return middleware
