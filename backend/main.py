#!/usr/bin/env python3
"""
Refit Backend - Image Update Detection and Application Engine
Checks container and stack images against their registries and applies updates
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import docker
import uvicorn
from docker.errors import DockerException
from fastapi import FastAPI

from config.paths import ensure_data_dirs
from config.settings import AppConfig, HealthCheckFilter, UpdaterConfig, setup_logging
from database import DatabaseManager
from deployment.stack_provider import ComposeStackProvider
from docker_monitor.periodic_jobs import UpdateJobsManager
from event_bus import Event, EventType, get_event_bus
from updates import routes as update_routes
from updates.applier import UpdateApplier
from updates.auto_updater import AutoUpdater
from updates.batch_checker import BatchUpdateChecker
from updates.record_store import UpdateRecordStore

# Configure logging
setup_logging()
logger = logging.getLogger(__name__)


# Background scheduler task (initialized in lifespan)
scheduler_task: Optional[asyncio.Task] = None


def create_docker_client(config: UpdaterConfig) -> docker.DockerClient:
    """Docker client from REFIT_DOCKER_HOST or the standard DOCKER_* environment"""
    if config.docker_host:
        return docker.DockerClient(base_url=config.docker_host)
    return docker.from_env()


async def _emit_system_event(event_type: EventType, name: str):
    try:
        await get_event_bus().emit(Event(
            event_type=event_type,
            scope_type='system',
            scope_id='refit',
            scope_name=name,
        ))
    except Exception as e:
        logger.error(f"Error emitting {event_type.value} event: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    global scheduler_task

    # Validate configuration early to fail fast on misconfiguration
    AppConfig.validate()
    config = UpdaterConfig.from_env()
    config.validate()
    ensure_data_dirs()

    logger.info("Starting Refit backend...")

    # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())

    db = DatabaseManager(AppConfig.DATABASE_PATH)
    try:
        docker_client = create_docker_client(config)
    except DockerException as e:
        logger.error(f"Cannot connect to Docker: {e}")
        raise

    stack_provider = ComposeStackProvider(docker_client)
    record_store = UpdateRecordStore(db, docker_client)
    checker = BatchUpdateChecker(db, docker_client, config, record_store=record_store)
    applier = UpdateApplier(db, docker_client, config, stack_provider=stack_provider, record_store=record_store)
    auto_updater = AutoUpdater(db, docker_client, stack_provider=stack_provider, config=config,
                               record_store=record_store)

    update_routes.set_database_manager(db)
    update_routes.set_batch_checker(checker)
    update_routes.set_update_applier(applier)
    update_routes.set_auto_updater(auto_updater)
    update_routes.set_stack_provider(stack_provider)
    logger.info("Update engine services initialized")

    jobs = UpdateJobsManager(checker, applier, auto_updater, config)
    update_routes.set_jobs_manager(jobs)
    scheduler_task = asyncio.create_task(jobs.run_forever())
    await _emit_system_event(EventType.SYSTEM_STARTUP, "Refit Backend Started")

    yield

    # Shutdown
    logger.info("Shutting down Refit backend...")
    await _emit_system_event(EventType.SYSTEM_SHUTDOWN, "Refit Backend Shutting Down")

    if scheduler_task:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            logger.info("Update scheduler task cancelled successfully")
        except Exception as e:
            logger.error(f"Error during scheduler task shutdown: {e}")

    try:
        await asyncio.to_thread(docker_client.close)
    except Exception as e:
        logger.error(f"Error closing Docker client: {e}")

    try:
        await asyncio.to_thread(db.engine.dispose)
        logger.info("SQLAlchemy engine disposed")
    except Exception as e:
        logger.error(f"Error disposing database engine: {e}")


app = FastAPI(
    title="Refit API",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(update_routes.router)


@app.get("/health")
async def health_check():
    """Liveness check (filtered from the access log)"""
    return {"status": "healthy", "service": "refit-backend"}


def main():
    uvicorn.run(
        app,
        host=AppConfig.HOST,
        port=AppConfig.PORT,
        log_level=AppConfig.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
