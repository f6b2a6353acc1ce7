"""
chatrelay — WhatsApp ↔ Django chat relay.

Startup order:
  1. HTTP control plane starts listening (health checks pass immediately)
  2. After the optional startup delay, the session supervisor connects the
     WhatsApp bridge; the pairing code shows up on /qr
  3. Inbound messages flow to the backend, replies flow back through the
     outbound queue

A supervisor that cannot initialize (even after clearing stale locks) stops
the server and the process exits with status 1. SIGINT/SIGTERM stop the
server, then the supervisor shuts down and the process exits with status 0.

Run: chatrelay   (or: python -m chatrelay)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Iterator

import httpx
import uvicorn
from fastapi import FastAPI

from chatrelay import __version__
from chatrelay.core.config import RelayConfig
from chatrelay.core.logging import setup_logging
from chatrelay.http.control import create_control_router
from chatrelay.outbound.queue import OutboundQueue
from chatrelay.pipeline.backend import BackendClient
from chatrelay.pipeline.delivery import DeliveryPipeline
from chatrelay.session.state import Session
from chatrelay.session.supervisor import SessionSupervisor, SupervisorFatalError
from chatrelay.transport.base import Transport
from chatrelay.transport.bridge import BridgeTransport

logger = logging.getLogger("chatrelay")


@dataclass
class Runtime:
    """Every long-lived component, wired together once per process."""

    config: RelayConfig
    session: Session
    transport: Transport
    backend: BackendClient
    queue: OutboundQueue
    pipeline: DeliveryPipeline
    supervisor: SessionSupervisor


def build_runtime(
    config: RelayConfig,
    transport: Transport | None = None,
    backend_transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    session = Session()
    transport = transport or BridgeTransport(config.transport)
    backend = BackendClient(config.backend, transport=backend_transport)
    queue = OutboundQueue(transport, session, config.queue)
    pipeline = DeliveryPipeline(
        backend,
        queue,
        session,
        backend_config=config.backend,
        dedup_config=config.dedup,
    )
    supervisor = SessionSupervisor(
        transport, session, pipeline, queue, config.session
    )
    return Runtime(
        config=config,
        session=session,
        transport=transport,
        backend=backend,
        queue=queue,
        pipeline=pipeline,
        supervisor=supervisor,
    )


def create_app(runtime: Runtime) -> FastAPI:
    app = FastAPI(title="chatrelay", version=__version__)
    app.include_router(
        create_control_router(
            session=runtime.session,
            supervisor=runtime.supervisor,
            pipeline=runtime.pipeline,
            queue=runtime.queue,
            config=runtime.config,
        )
    )
    app.state.runtime = runtime
    return app


class RelayServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to serve().

    The signal only stops the server; it is never re-raised, so the
    supervisor and the transport still shut down afterwards.
    """

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def _install_signal_handlers(server: uvicorn.Server) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()

    def on_signal(sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down", sig.name)
        server.handle_exit(sig, None)

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal, sig)
        except (NotImplementedError, RuntimeError):
            # Windows, or not the main thread
            continue
        installed.append(sig)
    return installed


async def _wait_until_started(
    server: uvicorn.Server, server_task: asyncio.Task
) -> bool:
    while not server.started:
        if server_task.done():
            return False
        await asyncio.sleep(0.05)
    return True


async def serve(
    config: RelayConfig | None = None,
    transport: Transport | None = None,
) -> int:
    """Run the control plane and the supervisor until shutdown. Returns the exit code."""
    config = config or RelayConfig.from_env()
    runtime = build_runtime(config, transport=transport)
    app = create_app(runtime)

    server = RelayServer(
        uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_config=None,
        )
    )
    signals = _install_signal_handlers(server)
    server_task = asyncio.create_task(server.serve(), name="http-server")
    exit_code = 0

    try:
        if not await _wait_until_started(server, server_task):
            logger.critical("HTTP server failed to start")
            return 1

        logger.info(
            "chatrelay v%s listening on port %d (backend: %s)",
            __version__,
            config.server.port,
            config.backend.chat_url,
        )

        if config.server.startup_delay > 0:
            await asyncio.wait({server_task}, timeout=config.server.startup_delay)

        if not server_task.done():
            start_task = asyncio.create_task(
                runtime.supervisor.start(), name="supervisor-start"
            )
            await asyncio.wait(
                {server_task, start_task}, return_when=asyncio.FIRST_COMPLETED
            )

            if start_task.done():
                try:
                    start_task.result()
                except SupervisorFatalError as e:
                    logger.critical("Giving up on WhatsApp: %s", e)
                    exit_code = 1
                    server.should_exit = True
            else:
                start_task.cancel()
                await asyncio.gather(start_task, return_exceptions=True)

        await server_task
    finally:
        await runtime.supervisor.shutdown(config.server.shutdown_grace)
        await runtime.backend.stop()
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.remove_signal_handler(sig)
        logger.info("chatrelay stopped")

    return exit_code


def run() -> None:
    setup_logging()
    sys.exit(asyncio.run(serve()))


if __name__ == "__main__":
    run()
