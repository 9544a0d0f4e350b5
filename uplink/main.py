import argparse
import asyncio
import logging
import platform
import signal
import sys
from typing import Optional

import yaml

from core.bus import MessageBus
from core.config import AppConfig, ConfigError, load_app_config
from core.logger import UplinkEventLog, analyze_log
from core.types import ExerciseStatus
from .connection import ConnectionManager
from .session import ExerciseSession
from .sources import SimulatedSnapshotSource
from .worker import UplinkResult, UplinkWorker

log = logging.getLogger("uplink")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TOM: exercise data uplink for the wearable client"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to the uplink YAML configuration (defaults built in if omitted)"
    )
    parser.add_argument(
        "--mode",
        choices=["validate", "sim", "analyze"],
        default="sim",
        help="'validate' (check config only), 'sim' (stream a simulated exercise), 'analyze' (summarize an event log)"
    )
    parser.add_argument("--url", type=str, default=None, help="Override the server URL")
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="End the simulated exercise after this many seconds"
    )
    parser.add_argument("--log", type=str, default=None, help="Event log to analyze (analyze mode)")
    return parser


def build_connection(config: AppConfig, bus: Optional[MessageBus] = None, connector=None) -> ConnectionManager:
    return ConnectionManager(
        url=config.server.url,
        headers=config.server.headers(),
        connector=connector,
        bus=bus,
        max_retries=config.uplink.max_retries,
        send_timeout=config.uplink.send_timeout_s,
        close_code=config.uplink.close_code,
    )


async def run_simulation(config: AppConfig, duration: Optional[float] = None, connector=None) -> UplinkResult:
    """Stream a simulated exercise until it ends (signal or duration)."""
    bus = MessageBus()
    event_log = None
    if config.logging.event_log:
        event_log = UplinkEventLog(config.server.client_type, config.logging.event_log)
        event_log.attach(bus)

    session = ExerciseSession()
    source = SimulatedSnapshotSource(session, config.simulation)
    connection = build_connection(config, bus=bus, connector=connector)
    worker = UplinkWorker(
        source,
        connection,
        stop_requested=session.is_stop_requested,
        update_interval=config.uplink.update_interval_s,
        connect_poll=config.uplink.connect_poll_s,
        bus=bus,
    )

    def on_status(status: ExerciseStatus):
        if status == ExerciseStatus.STOPPED:
            worker.request_stop()

    session.add_listener(on_status)

    loop = asyncio.get_running_loop()

    def end_exercise(signum=None, frame=None):
        log.info(f"[Main] Signal {signum} received. Ending exercise.")
        loop.call_soon_threadsafe(session.end)

    if platform.system() != "Windows":
        loop.add_signal_handler(signal.SIGINT, end_exercise, signal.SIGINT)
        loop.add_signal_handler(signal.SIGTERM, end_exercise, signal.SIGTERM)
    else:
        signal.signal(signal.SIGINT, end_exercise)

    if duration is not None:
        loop.call_later(duration, session.end)

    session.start()
    try:
        return await worker.run()
    finally:
        if platform.system() != "Windows":
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
        if event_log:
            event_log.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_app_config(args.config)
    except (OSError, ConfigError) as e:
        print(f"[Main] Configuration error: {e}", file=sys.stderr)
        return 1
    except yaml.YAMLError as e:
        print(f"[Main] Could not parse configuration: {e}", file=sys.stderr)
        return 1

    if args.url:
        config.server.url = args.url

    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    if args.mode == "validate":
        print(config.model_dump_json(indent=2))
        print("[Main] Configuration valid.")
        return 0

    if args.mode == "analyze":
        log_file = args.log or config.logging.event_log
        if not log_file:
            print("[Main] No event log given (--log) and none configured.", file=sys.stderr)
            return 1
        try:
            analyze_log(log_file)
        except FileNotFoundError:
            print(f"[Main] Event log not found: {log_file}", file=sys.stderr)
            return 1
        return 0

    log.info(f"[Main] Streaming simulated exercise to {config.server.url}...")
    result = asyncio.run(run_simulation(config, duration=args.duration))
    print(
        f"[Main] Uplink {result.outcome.value}: {result.cycles} cycles, "
        f"{result.send_failures} dropped messages."
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
