import logging

from fastapi import Request
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware

from flagledger.security.jwt import decode_token

logger = logging.getLogger(__name__)


class JWTMiddleware(BaseHTTPMiddleware):
    """Decodes the bearer token, if any, into ``request.state.token_payload``.

    Browsers cannot set headers on EventSource, so a ``token`` query parameter
    is accepted as well.
    """

    async def dispatch(self, request: Request, call_next):
        token = request.query_params.get('token')
        auth = request.headers.get('authorization', '')
        if auth.lower().startswith('bearer '):
            token = auth.split(' ', 1)[1]
        request.state.token_payload = None
        if token:
            try:
                request.state.token_payload = decode_token(token, request.app.state.services.settings)
            except JWTError:
                logger.info('Rejected invalid bearer token on %s', request.url.path)
        return await call_next(request)
