import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from inbound_relay.api import create_app
from inbound_relay.config_loader import load_settings
from inbound_relay.core import InboundRelayCore

# Configure logging level from environment
log_level = os.getenv("IRL_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


if __name__ == "__main__":
    settings = load_settings()
    # Create the core but don't start it yet - let uvicorn handle the event loop
    service = InboundRelayCore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.api_token, lifespan=lifespan)

    uvicorn.run(app, host=str(settings.http_host), port=int(settings.http_port))
