"""
Uplink Loop
Streams the latest exercise snapshot to the server every update interval.

Per cycle, while the stop signal is not set:
  1. Suspend until the connection manager reports CONNECTED.
  2. Reset the retry budget, sleep the update interval.
  3. Send the latest snapshot (always) and the waypoints (only when the
     destination changed or none were sent yet this session).

Failures never leave this loop: sends are best-effort and a failed cycle
is logged and skipped. Stopping or cancelling closes the connection and
reports success.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from core.bus import MessageBus, TOPIC_SEND
from core.types import ExerciseSnapshot
from .connection import ConnectionManager
from .sources import SnapshotSource
from .wire import DataType, build_waypoints, encode_snapshot, encode_waypoints

log = logging.getLogger(__name__)

StopSignal = Callable[[], bool]


class UplinkOutcome(Enum):
    SUCCESS = "success"


@dataclass
class UplinkResult:
    # *_sent count send attempts; dropped ones are also in send_failures
    outcome: UplinkOutcome = UplinkOutcome.SUCCESS
    cycles: int = 0
    snapshots_sent: int = 0
    waypoints_sent: int = 0
    send_failures: int = 0


class UplinkWorker:
    """Bridges a SnapshotSource to a ConnectionManager on a fixed cadence."""

    def __init__(
        self,
        source: SnapshotSource,
        connection: ConnectionManager,
        stop_requested: Optional[StopSignal] = None,
        update_interval: float = 2.0,
        connect_poll: float = 0.5,
        bus: Optional[MessageBus] = None,
    ):
        self.source = source
        self.connection = connection
        self._stop_requested = stop_requested or (lambda: False)
        self.update_interval = update_interval
        self.connect_poll = connect_poll
        self._bus = bus
        self._stop = asyncio.Event()

        # Waypoints are resent only when the destination changes
        self._sent_waypoints = False
        self._last_destination: Optional[Tuple[Optional[float], Optional[float]]] = None

        self.result = UplinkResult()

    def request_stop(self):
        """Let the current cycle finish, then stop."""
        self._stop.set()

    def should_stop(self) -> bool:
        if self._stop.is_set():
            return True
        try:
            return bool(self._stop_requested())
        except Exception as e:
            log.error(f"[Uplink] Stop signal raised {e!r}; stopping.")
            return True

    async def run(self) -> UplinkResult:
        """Run until stopped. Always reports success."""
        reason = "stopped"
        log.info(f"[Uplink] Started (interval {self.update_interval:.1f}s).")
        self.connection.open()
        try:
            while not self.should_stop():
                if not await self.connection.wait_connected(timeout=self.connect_poll):
                    continue
                self.connection.mark_healthy()
                await asyncio.sleep(self.update_interval)
                await self.run_cycle()
        except asyncio.CancelledError:
            reason = "cancelled"
            log.info("[Uplink] Cancelled.")
        finally:
            await self.connection.close(reason)

        self.result.outcome = UplinkOutcome.SUCCESS
        log.info(
            f"[Uplink] Finished: {self.result.cycles} cycles, "
            f"{self.result.snapshots_sent} snapshots, {self.result.waypoints_sent} waypoint sets, "
            f"{self.result.send_failures} failed sends."
        )
        return self.result

    async def run_cycle(self):
        """One send cycle: snapshot always, waypoints when needed."""
        self.result.cycles += 1
        try:
            snapshot = self.source.get_latest()
        except Exception as e:
            log.error(f"[Uplink] Could not read latest snapshot: {e!r}")
            return

        try:
            await self._send(DataType.EXERCISE_DATA, encode_snapshot(snapshot))
            self.result.snapshots_sent += 1
            await self._maybe_send_waypoints(snapshot)
        except Exception as e:
            log.error(f"[Uplink] Cycle failed: {e!r}")

    async def _maybe_send_waypoints(self, snapshot: Optional[ExerciseSnapshot]):
        if snapshot is None or not snapshot.has_current_location:
            return
        destination = (snapshot.dest_lat, snapshot.dest_lng)
        if self._sent_waypoints and destination == self._last_destination:
            return
        self._last_destination = destination
        await self._send(DataType.WAYPOINTS, encode_waypoints(build_waypoints(snapshot)))
        self._sent_waypoints = True
        self.result.waypoints_sent += 1

    async def _send(self, data_type: DataType, payload: bytes) -> bool:
        ok = await self.connection.send(payload)
        sent_at = int(time.time() * 1000)
        if ok:
            log.info(f"[Uplink] Sent {data_type.name} to server. {sent_at}")
        else:
            self.result.send_failures += 1
            log.warning(f"[Uplink] Dropped {data_type.name}. {sent_at}")
        if self._bus is not None:
            await self._bus.publish(TOPIC_SEND, {
                'type': data_type.name,
                'ok': ok,
                'bytes': len(payload),
                'sent_at': sent_at,
            })
        return ok
