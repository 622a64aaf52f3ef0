"""FastAPI application for the field agent."""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from fieldagent.agent import Agent
from fieldagent.api.routes import router
from fieldagent.services.config_handler import ENV_PREFIX, ConfigurationHandler
from fieldagent.services.event_bus import TOPIC_CONFIG_CHANGED, EventBus
from fieldagent.utils.logging import LogLevelFollower, setup_logger

VERSION = "1.0.0"


def _work_dir() -> Path:
    return Path(os.environ.get(f"{ENV_PREFIX}WORK_DIR", "./data"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Load configuration from the work directory
    - Initialize logger
    - Build and start the agent

    Shutdown:
    - Stop the agent (controller, downloads, feedback stores)
    """
    work_dir = _work_dir()
    work_dir.mkdir(parents=True, exist_ok=True)
    event_bus = EventBus()
    config_handler = ConfigurationHandler.load(work_dir, event_bus=event_bus)
    config = config_handler.get()

    logger = setup_logger(
        "fieldagent", config.log_file, level=getattr(logging, config.log_level)
    )
    follower = LogLevelFollower(config_handler)
    event_bus.subscribe(TOPIC_CONFIG_CHANGED, follower)
    logger.info(f"Field agent {VERSION} starting up (work dir {work_dir})...")

    agent = Agent(config_handler)
    await agent.start()
    app.state.agent = agent
    logger.info(f"Field agent ready on {config.api_host}:{config.api_port}")

    yield

    logger.info("Field agent shutting down...")
    app.state.agent = None
    await agent.stop()
    event_bus.unsubscribe(TOPIC_CONFIG_CHANGED, follower)


app = FastAPI(
    title="Field Agent",
    description="Update and feedback agent for managed field devices",
    version=VERSION,
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "fieldagent", "version": VERSION}


def main():
    """Main entry point for running the server."""
    config = ConfigurationHandler.load(_work_dir()).get()
    uvicorn.run(
        app,
        host=config.api_host,
        port=config.api_port,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
