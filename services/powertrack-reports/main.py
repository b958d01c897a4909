#!/usr/bin/env python3
"""
PowerTrack Reports Service

Connects to the PowerTrack stream, classifies incoming activities into
disaster reports and runs the matching persistence and reply actions.
Provides health check endpoints and metrics collection.
"""

import asyncio
import logging
import signal
import sys
from typing import Dict, Any, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response
import uvicorn
import structlog

from messages import MessageCatalog
from powertrack_client import PowertrackStreamClient
from reply_sender import ReplySender
from report_orchestrator import ReportOrchestrator
from report_store import ReportStore
from rule_provisioner import RuleProvisioner, RuleProvisioningError
from settings import Settings, load_settings
from shared.models import RuleSet

logger = structlog.get_logger(__name__)

# Global component instances
stream_client: Optional[PowertrackStreamClient] = None
orchestrator: Optional[ReportOrchestrator] = None
report_store: Optional[ReportStore] = None
shutdown_event = asyncio.Event()

# FastAPI app for health checks and metrics
app = FastAPI(title="PowerTrack Reports", version="1.0.0")


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured JSON logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint for Docker health checks."""
    if stream_client is None:
        return {"status": "starting", "service": "powertrack-reports"}

    stats = stream_client.get_stats()
    return {
        "status": "healthy" if stats['is_connected'] else "unhealthy",
        "service": "powertrack-reports",
        "stream_connected": stats['is_connected'],
        "reconnect_pending": stats['reconnect_pending'],
        "events_received": stats['events_received'],
        "last_message_time": stats['last_message_time']
    }


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root() -> Dict[str, Any]:
    """Root endpoint with service information."""
    info = {
        "service": "powertrack-reports",
        "status": "running",
        "description": "PowerTrack disaster report classifier"
    }
    if stream_client:
        info.update(stream_client.get_stats())
    return info


@app.get("/stats")
async def get_stats() -> Dict[str, Any]:
    """Get detailed component statistics."""
    stats: Dict[str, Any] = {}

    if stream_client is None:
        stats["stream"] = {"error": "Stream client not initialized"}
    else:
        stats["stream"] = stream_client.get_stats()

    if orchestrator is None:
        stats["pipelines"] = {"error": "Orchestrator not initialized"}
    else:
        stats["pipelines"] = {"pending": orchestrator.pending}

    return stats


async def run_worker(settings: Settings) -> None:
    """Wire the components, start the stream and run until shutdown.

    Raises:
        RuleProvisioningError: If the rules could not be pushed
        ValueError: If a configured rule tag has no known family
    """
    global stream_client, orchestrator, report_store

    log = logger.bind(component="worker")

    rule_set = RuleSet.from_mapping(settings.stream.rules)
    report_store = ReportStore(settings.database)
    orchestrator = ReportOrchestrator(
        store=report_store,
        sender=ReplySender(settings.twitter),
        messages=MessageCatalog(settings.twitter.messages, settings.twitter.default_language)
    )
    stream_client = PowertrackStreamClient(
        stream_url=settings.stream.stream_url,
        username=settings.stream.username,
        password=settings.stream.password,
        provisioner=RuleProvisioner(
            settings.stream.rules_url,
            settings.stream.username,
            settings.stream.password
        ),
        rule_set=rule_set,
        stream_timeout=settings.stream.stream_timeout,
        initial_backoff=settings.stream.initial_backoff,
        max_backoff=settings.stream.max_backoff
    )

    log.info("Updating rules and connecting stream", rule_tags=[rule.tag for rule in rule_set.rules])
    await stream_client.start(orchestrator.handle_event)

    await shutdown_event.wait()


async def shutdown_handler() -> None:
    """Handle graceful shutdown."""
    logger.info("Shutting down PowerTrack Reports service...")
    shutdown_event.set()

    # Stop the stream first so no new pipelines are scheduled
    if stream_client:
        try:
            await stream_client.stop()
        except Exception as e:
            logger.error("Error stopping stream client", error=str(e))

    if orchestrator:
        await orchestrator.drain()
        logger.info("In-flight pipelines finished")

    if report_store:
        try:
            await report_store.close()
        except Exception as e:
            logger.error("Error closing report store", error=str(e))

    logger.info("Shutdown complete")


def signal_handler(signum: int, frame) -> None:
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}, initiating shutdown...")
    shutdown_event.set()


async def main() -> int:
    """Main application entry point.

    Returns:
        Process exit status
    """
    load_dotenv()
    settings = load_settings()
    configure_logging(settings.log_level)

    logger.info("Starting PowerTrack Reports service...",
               stream_url=settings.stream.stream_url,
               stream_timeout=settings.stream.stream_timeout,
               send_enabled=settings.twitter.send_enabled,
               health_port=settings.health_port)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=settings.health_port,
        log_level=settings.log_level.lower()
    )
    server = uvicorn.Server(config)
    server_task = asyncio.create_task(server.serve())
    # Server exit ends the worker as well
    server_task.add_done_callback(lambda _: shutdown_event.set())

    exit_code = 0
    try:
        await run_worker(settings)
    except RuleProvisioningError as e:
        logger.error("Rule provisioning failed, cannot start stream", error=str(e))
        exit_code = 1
    except ValueError as e:
        logger.error("Invalid rule configuration, cannot start stream", error=str(e))
        exit_code = 1
    finally:
        await shutdown_handler()
        server.should_exit = True
        await server_task

    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
