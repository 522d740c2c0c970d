from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from flagledger.api.middleware import JWTMiddleware
from flagledger.api.router import api_router
from flagledger.config.settings import settings
from flagledger.db.session import init_schema
from flagledger.services.errors import AlreadySolved, IncorrectFlag, RateLimited, ScoringError
from flagledger.services.runtime import Services, build_services

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    'event_not_active': 403,
    'rate_limited': 429,
    'already_solved': 200,
    'incorrect_flag': 400,
    'not_found': 404,
    'no_team': 403,
    'insufficient_points': 402,
    'internal': 500,
}


def scoring_error_response(exc: ScoringError) -> JSONResponse:
    body = {'error': exc.kind, 'detail': exc.detail}
    headers = None
    if isinstance(exc, AlreadySolved):
        body.update(correct=True, already_solved=True, points_awarded=exc.points_awarded)
    elif isinstance(exc, IncorrectFlag):
        body['correct'] = False
    elif isinstance(exc, RateLimited):
        body['retry_after'] = exc.retry_after
        headers = {'Retry-After': str(exc.retry_after)}
    return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 500), content=body, headers=headers)


def create_app(services: Services | None = None) -> FastAPI:
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_schema(services.engine)
        yield
        services.engine.dispose()

    app = FastAPI(title=services.settings.app_name, debug=services.settings.debug, lifespan=lifespan)
    app.state.services = services
    app.add_middleware(JWTMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in services.settings.allowed_origins.split(',') if o.strip()],
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )
    app.include_router(api_router, prefix=services.settings.api_prefix)

    @app.exception_handler(ScoringError)
    async def handle_scoring_error(request: Request, exc: ScoringError) -> JSONResponse:
        return scoring_error_response(exc)

    @app.get('/healthz', tags=['health'])
    def healthcheck() -> dict[str, str]:
        return {'status': 'ok'}

    return app


app = create_app()
