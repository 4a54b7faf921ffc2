"""Supply-Bot worker process.

Startup: logging → agents → orchestrator → scheduler → queue worker loop.
Shutdown (SIGINT/SIGTERM or an unhandled loop exception): stop the queue
loop, stop the scheduler, shut agents down, close HTTP clients.

Run with: python -m supplybot.worker
"""

import asyncio
import logging
import signal

from .agents import DiplomatAgent, ScoutAgent, StrategistAgent
from .config import settings
from .http_client import close_clients
from .logging_config import setup_logging
from .orchestrator import AgentOrchestrator
from .scheduler import configure_scheduler, scheduler
from .services.portal_automation import PortalAutomationService

log = logging.getLogger(__name__)


def build_orchestrator(session_factory=None) -> AgentOrchestrator:
    portal = PortalAutomationService(session_factory=session_factory)
    return AgentOrchestrator(
        scout=ScoutAgent(session_factory, portal=portal),
        strategist=StrategistAgent(session_factory),
        diplomat=DiplomatAgent(session_factory),
        session_factory=session_factory,
    )


async def run() -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def _request_stop(reason: str) -> None:
        if not stop.is_set():
            log.info(f"Shutdown requested: {reason}")
            stop.set()

    def _on_loop_error(loop, context) -> None:
        exc = context.get("exception")
        log.error(f"Unhandled error in event loop: {context.get('message')}", exc_info=exc)
        _request_stop("unhandled exception")

    loop.set_exception_handler(_on_loop_error)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except NotImplementedError:
            # Windows event loops
            pass

    orchestrator = build_orchestrator()
    async with orchestrator:
        configure_scheduler(orchestrator)
        if settings.scheduler_enabled:
            scheduler.start()
        worker = asyncio.create_task(orchestrator.run_worker(stop))
        log.info(f"Supply-Bot worker running ({settings.environment})")
        health = await orchestrator.health_check()
        log.info(f"Agent health: {health}")

        await stop.wait()

        await worker
        if scheduler.running:
            scheduler.shutdown(wait=False)
    await close_clients()
    log.info("Supply-Bot worker stopped")


def main() -> None:
    setup_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
