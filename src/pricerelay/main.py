"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown of the broker client and the
relay's subscription task.

The relay and broker live on app.state instead of module globals, so tests
can build several apps (several relay instances) against one broker.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.responses import FileResponse

from pricerelay import __version__
from pricerelay.api import api_router
from pricerelay.config import Settings
from pricerelay.config import settings as default_settings
from pricerelay.errors import SubscriptionError
from pricerelay.log import configure_logging
from pricerelay.realtime.broker import Broker, create_broker
from pricerelay.realtime.relay import RelayServer

logger = structlog.get_logger()

STATIC_DIR = Path(__file__).parent / "static"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. An unreachable broker is not fatal — the relay retries the
    subscription with backoff, since Redis often starts after us.
    """
    settings: Settings = app.state.settings
    broker: Broker = app.state.broker
    relay: RelayServer = app.state.relay

    configure_logging(settings.log_level, json=settings.log_json)
    logger.info(
        "pricerelay.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        channel=relay.channel,
    )

    try:
        await broker.connect()
    except SubscriptionError as e:
        logger.warning("pricerelay.broker_unavailable", error=str(e))

    await relay.start()

    yield

    logger.info("pricerelay.shutdown")
    await relay.stop()
    await broker.close()


def create_app(
    settings: Optional[Settings] = None,
    broker: Optional[Broker] = None,
    relay: Optional[RelayServer] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    settings = settings or default_settings
    if relay is not None:
        broker = relay.broker
    if broker is None:
        broker = create_broker(settings.redis_url, **settings.redis_client_options)
    relay = relay or RelayServer.from_settings(broker, settings)

    app = FastAPI(
        title="pricerelay",
        description="Broadcast relay for live price updates over WebSockets",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.broker = broker
    app.state.relay = relay

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route
    from pricerelay.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    @app.get("/", include_in_schema=False)
    async def index():
        """Minimal browser client: connects to /ws and renders prices."""
        return FileResponse(STATIC_DIR / "index.html", media_type="text/html")

    return app


# Default app instance (used by uvicorn: pricerelay.main:app)
app = create_app()
