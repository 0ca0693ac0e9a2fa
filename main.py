import argparse
import asyncio
import sys

from redis_eventbus import EventBusRegistry
from redis_eventbus.config import config
from redis_eventbus.exceptions import EventBusError
from redis_eventbus.logger import define_log_level, logger


async def run_ping(registry: EventBusRegistry, args) -> int:
    bus = await registry.create(args.name, prefix=args.prefix)
    alive = await bus.ping(timeout=args.timeout, min_response_count=args.min_responses)
    if alive:
        print(f"{args.name}: at least {args.min_responses} other bus(es) answered")
        return 0
    print(f"{args.name}: fewer than {args.min_responses} other bus(es) answered within {args.timeout} ms")
    return 1


async def run_emit(registry: EventBusRegistry, args) -> int:
    bus = await registry.create(args.name, prefix=args.prefix)
    bus.emit(args.event, args.payload)
    await bus.flush()
    logger.info(f"Emitted '{args.event}' on {args.name}")
    return 0


async def run_listen(registry: EventBusRegistry, args) -> int:
    bus = await registry.create(args.name, prefix=args.prefix)

    for event in args.events:

        def show(payload: str, event: str = event) -> None:
            print(f"[{event}] {payload}", flush=True)

        await bus.on(event, show)

    logger.info(f"Listening on {args.name} for: {', '.join(args.events)} (Ctrl+C to stop)")
    await asyncio.Event().wait()
    return 0


COMMANDS = {
    "ping": run_ping,
    "emit": run_emit,
    "listen": run_listen,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Redis event bus utility")
    parser.add_argument("--name", type=str, required=True, help="Event bus name")
    parser.add_argument(
        "--prefix", type=str, default=None,
        help=f"External channel prefix (default: {config.prefix!r})",
    )
    parser.add_argument(
        "--log-level", type=str, default=config.log.print_level,
        help=f"Console log level (default: {config.log.print_level})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ping_parser = subparsers.add_parser("ping", help="Check for other live buses")
    ping_parser.add_argument(
        "--timeout", type=int, default=config.liveness.timeout_ms,
        help=f"Milliseconds to wait for answers (default: {config.liveness.timeout_ms})",
    )
    ping_parser.add_argument(
        "--min-responses", type=int, default=config.liveness.min_response_count,
        help="Number of other buses that must answer",
    )

    emit_parser = subparsers.add_parser("emit", help="Emit one event")
    emit_parser.add_argument("event", type=str, help="Event name")
    emit_parser.add_argument("payload", type=str, help="Text payload")

    listen_parser = subparsers.add_parser("listen", help="Print events as they arrive")
    listen_parser.add_argument("events", nargs="+", help="Event names to listen to")

    return parser


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    define_log_level(print_level=args.log_level, logfile_level=config.log.logfile_level)

    registry = EventBusRegistry()
    try:
        return await COMMANDS[args.command](registry, args)
    except EventBusError as e:
        logger.error(f"{args.command} failed: {e}")
        return 2
    finally:
        await registry.destroy_all()


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.warning("Operation interrupted.")
