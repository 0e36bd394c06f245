"""peercall endpoint entrypoint."""

import asyncio
import logging
import signal

import asyncpg

from peercall.call.controller import CallController
from peercall.call.notifier import CallNotifier, RingingObserver
from peercall.config import Settings
from peercall.database import purge_stale_messages, run_migrations
from peercall.media.aiortc_engine import AiortcMediaAcquisition, AiortcMediaEngine
from peercall.permissions import StaticPermissionGate
from peercall.signaling.channel import SignalingChannel
from peercall.signaling.relay import create_relay_app
from peercall.transport.base import MailboxTransport
from peercall.transport.memory import MemoryMailboxHub
from peercall.transport.postgres import PostgresMailboxTransport
from peercall.transport.websocket import WebSocketTransport
from peercall.web import create_app, start_webapp, stop_webapp

logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    settings = Settings.from_env()
    endpoint_id = settings.endpoint_id
    logger.info("Starting endpoint %s (%s transport)", endpoint_id, settings.transport)

    relay_runner = None
    if settings.relay_port is not None:
        relay_runner = await start_webapp(
            create_relay_app(), settings.web_host, settings.relay_port
        )
        logger.info("Mailbox relay on port %d", settings.relay_port)

    pool = None
    transport: MailboxTransport
    if settings.transport == "postgres":
        pool = await asyncpg.create_pool(settings.database_url)
        assert pool is not None
        await run_migrations(pool)
        # Offers left over from a previous run would ring immediately
        await purge_stale_messages(pool, endpoint_id, settings.call_timeout)
        transport = PostgresMailboxTransport(
            pool,
            poll_interval=settings.poll_interval,
            reconnect_delay=settings.reconnect_delay,
        )
    elif settings.transport == "memory":
        transport = MemoryMailboxHub().transport(reconnect_delay=settings.reconnect_delay)
    else:
        transport = WebSocketTransport(
            settings.signaling_url, reconnect_delay=settings.reconnect_delay
        )

    notifier = CallNotifier(endpoint_id)
    notifier.subscribe(
        RingingObserver(
            start=lambda peer_id: logger.info("Ringing: incoming call from %s", peer_id),
            stop=lambda: logger.info("Ringing stopped"),
        )
    )

    channel = SignalingChannel(transport)
    controller = CallController(
        endpoint_id,
        channel,
        AiortcMediaEngine(),
        AiortcMediaAcquisition(),
        StaticPermissionGate(),
        notifier,
        ice_servers=settings.ice_server_config,
        call_timeout=settings.call_timeout,
        incoming_call_timeout=settings.incoming_call_timeout,
    )
    controller.start()

    app = create_app(controller, channel)
    runner = await start_webapp(app, settings.web_host, settings.web_port)

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    try:
        await channel.start(endpoint_id)
        await shutdown.wait()
        logger.info("Shutting down...")
    finally:
        await controller.close()
        await channel.close()
        await stop_webapp(runner)
        if relay_runner is not None:
            await stop_webapp(relay_runner)
        if pool is not None:
            await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
