"""
Connection Manager
Owns the single WebSocket connection to the telemetry server.

- Opens the connection asynchronously; the outcome arrives via
  on_open()/on_failure(), never by blocking the caller.
- Reconnects on failure with a bounded retry budget (RetryState).
- Once close() has been called no failure can trigger a reconnect, so a
  session that was stopped while still retrying stays down.

The transport is an injected `connector(url, headers)` coroutine that
returns a websocket-like object (send/close/async iteration). The default
uses websockets' asyncio client.
"""

import asyncio
import dataclasses
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from core.bus import MessageBus, TOPIC_CONNECTION
from core.state_machine import StateMachine
from core.types import ConnectionState, RetryState

log = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

Connector = Callable[[str, Dict[str, str]], Awaitable[Any]]


async def websocket_connector(url: str, headers: Dict[str, str]):
    """Default transport: a websockets client connection."""
    return await connect(url, additional_headers=headers)


def get_connection_transitions():
    return {
        ConnectionState.DISCONNECTED: {ConnectionState.CONNECTED},
        ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED},
    }


class ConnectionManager:
    """
    Maintains at most one live connection to a fixed server URL.

    The uplink loop only reads `state`/`is_connected`, awaits
    `wait_connected()`, calls `send()` and `mark_healthy()`. Everything else
    is driven by the transport callbacks.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        connector: Optional[Connector] = None,
        bus: Optional[MessageBus] = None,
        max_retries: int = 10,
        send_timeout: Optional[float] = None,
        close_code: int = NORMAL_CLOSURE,
    ):
        self._url = url
        self._headers = dict(headers or {})
        self._connector = connector or websocket_connector
        self._bus = bus
        self._send_timeout = send_timeout
        self._close_code = close_code

        self._retry = RetryState(max_retries=max_retries)
        self._fsm = StateMachine(
            initial_state=ConnectionState.DISCONNECTED,
            transitions=get_connection_transitions(),
        )
        self._fsm.add_listener(self._on_transition)
        self._connected = asyncio.Event()

        self._ws: Optional[Any] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

        self.open_attempts = 0

        log.info(f"[Connection] Initialized. Server: {url} (max retries: {max_retries})")

    # --- Read-only views ---

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._fsm.current

    @property
    def is_connected(self) -> bool:
        return self._fsm.current == ConnectionState.CONNECTED

    @property
    def retry(self) -> RetryState:
        """A copy of the retry state."""
        return dataclasses.replace(self._retry)

    # --- Lifecycle ---

    def open(self):
        """
        Start a new connection attempt and return immediately.
        A previous connection object, if any, is abandoned rather than closed.
        """
        if self._retry.terminated:
            log.info("[Connection] Terminated. Ignoring open().")
            return
        self.open_attempts += 1
        log.info(f"[Connection] Connecting to {self._url} (attempt {self.open_attempts})...")
        self._connect_task = asyncio.get_running_loop().create_task(self._connect())

    async def _connect(self):
        try:
            ws = await self._connector(self._url, dict(self._headers))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self.on_failure(e)
            return
        await self.on_open(ws)

    async def on_open(self, ws: Any):
        """Transport confirmed the handshake."""
        if self._retry.terminated:
            log.info("[Connection] Connected after termination. Closing new socket.")
            await self._close_socket(ws, "terminated")
            return

        self._ws = ws
        self._fsm.transition(ConnectionState.CONNECTED)
        self._watch_task = asyncio.get_running_loop().create_task(self._watch(ws))

    async def _watch(self, ws: Any):
        """Drain inbound frames; report a close we did not ask for as a failure."""
        error: Optional[BaseException] = None
        try:
            async for message in ws:
                log.debug(f"[Connection] Received message: {message!r}")
        except ConnectionClosed as e:
            error = e
        except Exception as e:
            error = e

        if ws is not self._ws:
            return  # superseded or closed by us
        if error is None:
            error = ConnectionError("Connection closed by server")
        await self.on_failure(error)

    async def on_failure(self, error: BaseException):
        """
        Called by the transport when the connection drops or fails to
        establish. Reconnects while the retry budget lasts.
        """
        if self._retry.terminated:
            log.info(f"[Connection] Previous session has ended. Not reconnecting ({error!r}).")
            return

        log.warning(f"[Connection] Connection failure: {error!r}")
        self._ws = None
        self._fsm.transition(ConnectionState.DISCONNECTED)

        if self._retry.record_failure():
            log.info(
                f"[Connection] Retrying ({self._retry.retry_count}/{self._retry.max_retries})..."
            )
            self.open()
        else:
            log.error(
                f"[Connection] Failed to connect to server after {self._retry.max_retries} attempts. Giving up."
            )

    def mark_healthy(self):
        """Reset the retry budget after a confirmed healthy cycle."""
        if self._retry.retry_count:
            log.debug(f"[Connection] Healthy again after {self._retry.retry_count} retries.")
        self._retry.reset()

    async def send(self, payload: bytes) -> bool:
        """
        Best-effort send of one binary frame.
        Returns False (and drops the message) if it could not be sent.
        """
        ws = self._ws
        if ws is None or not self.is_connected:
            log.warning(f"[Connection] Not connected. Dropping {len(payload)}-byte message.")
            return False
        try:
            if self._send_timeout is not None:
                await asyncio.wait_for(ws.send(payload), self._send_timeout)
            else:
                await ws.send(payload)
        except Exception as e:
            log.error(f"[Connection] Failed to send {len(payload)}-byte message: {e!r}")
            return False
        return True

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Suspend until CONNECTED. Returns False on timeout."""
        if self._connected.is_set():
            return True
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_settled(self):
        """Wait until no connection attempt is in flight."""
        while self._connect_task is not None and not self._connect_task.done():
            await asyncio.wait({self._connect_task})

    async def close(self, reason: str):
        """
        Stop for good: no further reconnects, close the live socket with a
        normal closure code and the given reason.
        """
        self._retry.terminate()
        log.info(f"[Connection] Closing ({reason}).")

        current = asyncio.current_task()
        if self._connect_task is not None and not self._connect_task.done() and self._connect_task is not current:
            self._connect_task.cancel()

        ws, self._ws = self._ws, None
        self._fsm.transition(ConnectionState.DISCONNECTED)

        if ws is not None:
            await self._close_socket(ws, reason)

        if self._watch_task is not None and not self._watch_task.done() and self._watch_task is not current:
            self._watch_task.cancel()

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _close_socket(self, ws: Any, reason: str):
        try:
            await ws.close(code=self._close_code, reason=reason)
        except Exception as e:
            log.error(f"[Connection] Error while closing socket: {e!r}")

    # --- State change events ---

    def _on_transition(self, from_state: ConnectionState, to_state: ConnectionState):
        if to_state == ConnectionState.CONNECTED:
            self._connected.set()
            log.info(f"[Connection] Websocket opened ({self._url}).")
        else:
            self._connected.clear()
            log.info(f"[Connection] {from_state.name} -> {to_state.name}")

        if self._bus is None:
            return
        event = {
            'from': from_state.name,
            'to': to_state.name,
            'retry_count': self._retry.retry_count,
            'terminated': self._retry.terminated,
        }
        task = asyncio.get_running_loop().create_task(self._bus.publish(TOPIC_CONNECTION, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
