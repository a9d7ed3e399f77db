import logging
from contextlib import asynccontextmanager
from pprint import pprint
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse

from sonar_relay.api.errors import relay_error_handler
from sonar_relay.api.health import router as health_router
from sonar_relay.api.proxy import router as proxy_router
from sonar_relay.config import ConfigurationService, setup_config
from sonar_relay.config.log import configure_structlog, get_logger
from sonar_relay.config.models import ConfigModel
from sonar_relay.exceptions import RelayError
from sonar_relay.middlewares.request_context import RequestContextMiddleware
from sonar_relay.middlewares.security_headers import SecurityHeadersMiddleware
from sonar_relay.relay.stream import StreamRelay
from sonar_relay.relay.upstream import UpstreamService


def build_http_client(config: ConfigModel) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(config.upstream_timeout, connect=10.0), http2=True)


def create_app(config: Optional[ConfigModel] = None, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """Application factory for creating FastAPI instances.

    Args:
        config: Optional configuration. If None, loads it from the config files.
        http_client: Optional upstream client, mainly for tests. If None, one is
            created on startup and closed on shutdown.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        setup_config()
        config_service = ConfigurationService()
    else:
        config_service = ConfigurationService(config=config)
    config = config_service.get_config()

    configure_structlog(config)
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.http_client is None
        if owned:
            app.state.http_client = build_http_client(config)
            app.state.upstream_service = UpstreamService(app.state.http_client, config)
        logger.info('Relay started', upstream=config.upstream_base_url)
        try:
            yield
        finally:
            if owned:
                await app.state.http_client.aclose()
                app.state.http_client = None

    app = FastAPI(title='sonar-relay', version='0.1.0', lifespan=lifespan)

    app.state.config = config
    app.state.config_service = config_service
    app.state.http_client = http_client
    app.state.upstream_service = UpstreamService(http_client, config) if http_client is not None else None
    app.state.stream_relay = StreamRelay(config.relay_headers)

    for k in logging.root.manager.loggerDict.keys():
        if any(k.startswith(v) for v in {'fastapi', 'uvicorn', 'httpx', 'httpcore', 'hpack'}):
            logging.getLogger(k).setLevel('INFO')

    app.include_router(health_router, prefix='/api', tags=['health'])
    app.include_router(proxy_router, prefix='/api')

    # Add middlewares (executed LIFO)
    app.add_middleware(GZipMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins,
        allow_credentials=True,
        allow_methods=['GET', 'POST', 'OPTIONS'],
        allow_headers=['*'],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(RelayError, relay_error_handler)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        logger.debug('validation error', path=request.url.path, errors=str(exc.errors()))
        return ORJSONResponse(status_code=400, content={'error': f'Invalid request body: {exc.errors()}'})

    if config.dev:
        pprint(config.model_dump())

    return app


def run() -> None:
    import uvicorn

    app = create_app()
    config = app.state.config
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == '__main__':
    run()
