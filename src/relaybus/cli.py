"""Command-line entrypoint for operating the broker layer."""

from __future__ import annotations

from argparse import ArgumentParser, Namespace
import asyncio
import contextlib
import logging
import signal
from uuid import uuid4

from relaybus.broker.errors import BrokerError
from relaybus.broker.manager import BrokerManager
from relaybus.config.settings import BrokerSettings, get_broker_settings
from relaybus.contracts.events import AgentInvocationEvent, AgentInvocationPayload
from relaybus.contracts.invocation import InvokeOptions, is_async_result
from relaybus.contracts.types import AgentInvocationChannel
from relaybus.dispatch.invoke import InvocationDispatcher
from relaybus.dispatch.replies import AgentResponse
from relaybus.dispatch.worker import AgentWorker
from relaybus.observability.logging import configure_logging
from relaybus.observability.telemetry import setup_tracing

logger = logging.getLogger(__name__)


class EchoExecutor:
    """Answers every event with its own message."""

    async def execute(self, event: AgentInvocationEvent) -> AgentResponse:
        return AgentResponse(text=event.payload.message, message_id=str(uuid4()))


async def _health(settings: BrokerSettings) -> int:
    manager = BrokerManager(settings)
    try:
        await manager.initialize()
        healthy = await manager.health_check()
    except BrokerError as exc:
        logger.error("health.initialize_failed", extra={"extra": {"error": str(exc)}})
        healthy = False
    finally:
        await manager.shutdown()
    broker = settings.broker_type.value if settings.broker_type else "disabled"
    print(f"broker={broker} healthy={healthy}")
    return 0 if healthy else 1


async def _publish(settings: BrokerSettings, args: Namespace) -> int:
    manager = BrokerManager(settings)
    await manager.initialize()
    try:
        dispatcher = InvocationDispatcher(manager)

        async def inline() -> str:
            return args.message

        result = await dispatcher.invoke(
            InvokeOptions(
                channel=AgentInvocationChannel(args.channel),
                agent_id=args.agent_id,
                organization_id=args.organization_id,
                user_id=args.user_id,
                payload=AgentInvocationPayload(message=args.message),
                sync_handler=inline,
            )
        )
    finally:
        await manager.shutdown()
    if is_async_result(result):
        print(f"accepted event_id={result.event_id}")
    else:
        print(f"completed result={result.result}")
    return 0


async def run_worker(manager: BrokerManager, worker: AgentWorker, stop: asyncio.Event) -> int:
    """Consume until ``stop`` is set.

    The broker is shut down before the worker: providers stop intake and wait
    for the handlers already running, so nothing is delivered to a stopped
    worker.
    """
    try:
        await worker.start()
        if not worker.running:
            return 1
        await stop.wait()
    finally:
        await manager.shutdown()
        await worker.stop()
    return 0


async def _worker(settings: BrokerSettings) -> int:
    manager = BrokerManager(settings)
    await manager.initialize()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    return await run_worker(manager, AgentWorker(manager, EchoExecutor()), stop)


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="relaybus", description="Operate the agent invocation broker.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("health", help="Initialise the configured broker and report its health.")

    publish = sub.add_parser("publish", help="Dispatch one agent invocation.")
    publish.add_argument("--agent-id", required=True)
    publish.add_argument("--organization-id", required=True)
    publish.add_argument("--user-id", default="system")
    publish.add_argument("--message", required=True)
    publish.add_argument(
        "--channel",
        choices=[c.value for c in AgentInvocationChannel],
        default=AgentInvocationChannel.CHATOPS.value,
    )

    sub.add_parser("worker", help="Consume events with an echo executor until interrupted.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_broker_settings()
    configure_logging(settings.log_level)
    setup_tracing("relaybus")

    if args.command == "health":
        return asyncio.run(_health(settings))
    if args.command == "publish":
        return asyncio.run(_publish(settings, args))
    return asyncio.run(_worker(settings))


if __name__ == "__main__":
    raise SystemExit(main())
