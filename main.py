"""Main FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from localpki.api.dependencies import get_config
from localpki.api.routes import store, tls
from localpki.services.tls_runtime import resolve_server_credentials
from localpki.utils.logger import setup_logger

config = get_config()

setup_logger(config)
logger = logging.getLogger("localpki")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan event handler."""
    logger.info(f"Starting {config.app.title} v{config.app.version} ({config.app.profile.value} profile)")
    logger.info(f"Identity store: {config.store_location().root} ({config.store.scope.value})")

    credentials = app.state.tls_credentials
    if credentials is None:
        logger.info("No TLS credentials resolved; serving status API without the TLS runner")
    elif credentials.ephemeral:
        logger.warning(f"Serving ephemeral certificate {credentials.fingerprint} from {credentials.cert_path.parent}")
    else:
        logger.info(f"Serving store certificate {credentials.fingerprint}")

    yield

    logger.info(f"Shutting down {config.app.title}")


app = FastAPI(
    title=config.app.title,
    version=config.app.version,
    debug=config.app.debug,
    description="Read-only status API for the local certificate lifecycle engine.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)
app.state.tls_credentials = None

app.include_router(store.router)
app.include_router(tls.router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": config.app.version}


def run(host: str = None, port: int = None) -> None:
    """Serve the app over TLS with the certificate resolved from the identity store."""
    credentials = resolve_server_credentials(config)
    app.state.tls_credentials = credentials

    uvicorn.run(
        app,
        host=host or config.app.host,
        port=port or config.app.port,
        ssl_certfile=str(credentials.cert_path),
        ssl_keyfile=str(credentials.key_path),
    )


if __name__ == "__main__":
    run()
