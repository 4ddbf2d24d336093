# Caseta Bridge Monitor
# Copyright (C) 2025 Christian "fogWraith" Bergman
#
#   This program is free software: you can redistribute it and/or modify
#   it under the terms of the GNU General Public License as published by
#   the Free Software Foundation, version 3 of the License, or
#   (at your option) any later version.
#
#   This program is distributed in the hope that it will be useful,
#   but WITHOUT ANY WARRANTY; without even the implied warranty of
#   MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
#   GNU General Public License for more details.
#
#   You should have received a copy of the GNU General Public License
#   along with this program.  If not, see <https://www.gnu.org/licenses/>.
###
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Optional, Union, Callable, List, Set, Tuple, Type, AsyncIterator
from dataclasses import dataclass
from enum import Enum

from protocol_utils import (
    LINE_TERMINATOR,
    MONITOR_PREFIX,
    ConnectionEvent,
    LineFramer,
    LoggedIn,
    MonitorMessageReceived,
    PromptType,
    match_prompt,
    parse_monitor_message,
)

DEFAULT_PORT = 23
DEFAULT_USERNAME = "lutron"
DEFAULT_PASSWORD = "integration"

Subscriber = Callable[[ConnectionEvent], None]

class ConnectionState(Enum):
    AWAITING_LOGIN = 1
    LOGGED_IN = 2

@dataclass
class BridgeConnectionOptions:
    host: str = ""
    port: Union[int, str] = DEFAULT_PORT
    username: str = DEFAULT_USERNAME
    password: str = DEFAULT_PASSWORD
    debug: bool = False
    connect_timeout: Optional[float] = 30.0
    login_timeout: Optional[float] = None
    fragment_timeout: Optional[float] = 0.1
    buffer_size: int = 4096

    def __post_init__(self):
        try:
            self.port = int(self.port)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid port number: {self.port!r}")

        if not 0 < self.port < 65536:
            raise ValueError(f"Port out of range: {self.port}")
        if self.buffer_size <= 0:
            raise ValueError("Buffer size must be positive")
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ValueError("Connect timeout must be positive")
        if self.login_timeout is not None and self.login_timeout <= 0:
            raise ValueError("Login timeout must be positive")
        if self.fragment_timeout is not None and self.fragment_timeout <= 0:
            raise ValueError("Fragment timeout must be positive")

    @property
    def connect_host(self) -> str:
        return self.host or "localhost"

class CasetaBridgeConnection:
    """Telnet-style session with a Caseta bridge."""

    def __init__(self, options: Optional[BridgeConnectionOptions] = None,
                 logger: Optional[logging.Logger] = None, **overrides):
        if options is None:
            options = BridgeConnectionOptions(**overrides)
        elif overrides:
            options = dataclasses.replace(options, **overrides)

        self.options = options
        self.logger = logger or logging.getLogger(__name__)
        self.state = ConnectionState.AWAITING_LOGIN
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.framer = LineFramer()

        self._subscribers: List[Tuple[Subscriber, Optional[Type]]] = []
        self._queues: Set[asyncio.Queue] = set()
        self._closed = False
        self._closed_event = asyncio.Event()
        self._login_timer: Optional[asyncio.TimerHandle] = None

        loop = asyncio.get_running_loop()
        self._task: Optional[asyncio.Task] = loop.create_task(self._run())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connected(self) -> bool:
        return self.writer is not None and not self._closed

    @property
    def logged_in(self) -> bool:
        return self.state == ConnectionState.LOGGED_IN

    def subscribe(self, callback: Subscriber, event_type: Optional[Type] = None) -> Callable[[], None]:
        entry = (callback, event_type)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    async def events(self) -> AsyncIterator[ConnectionEvent]:
        """Yield events as they are emitted until the session closes.

        Only events emitted after iteration has started are delivered. A
        consumer that stops early must call aclose() on the iterator, or its
        queue keeps filling until the session closes.
        """
        if self._closed:
            return

        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._queues.discard(queue)

    async def _run(self) -> None:
        try:
            await self._connect()
            await self._read_loop()
        except asyncio.CancelledError:
            self.logger.debug("Bridge connection task cancelled")
        except Exception as e:
            self.logger.error(f"CasetaBridgeConnection error: {e}")
        finally:
            self.close()

    async def _connect(self) -> None:
        host = self.options.connect_host
        port = self.options.port
        self.logger.info(f"Connecting to bridge at {host}:{port}")

        future = asyncio.open_connection(host, port)
        try:
            self.reader, self.writer = await asyncio.wait_for(
                future,
                timeout=self.options.connect_timeout
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"Connection timeout to {host}:{port}")
        except ConnectionRefusedError:
            raise ConnectionRefusedError(f"Connection refused by {host}:{port}")

        self.logger.info(f"Connected to bridge at {host}:{port}")

        if self.options.login_timeout is not None:
            loop = asyncio.get_running_loop()
            self._login_timer = loop.call_later(
                self.options.login_timeout,
                self._login_timed_out
            )

    async def _read_loop(self) -> None:
        while not self._closed:
            timeout = self.options.fragment_timeout if self.framer.flushable else None

            try:
                data = await asyncio.wait_for(
                    self.reader.read(self.options.buffer_size),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                self._process_lines(self.framer.flush())
                await self._drain()
                continue

            if not data:
                self.logger.info("Bridge closed the connection")
                self._process_lines(self.framer.flush())
                break

            self.receive_data(data)
            await self._drain()

    async def _drain(self) -> None:
        if self.writer is not None and not self._closed:
            await self.writer.drain()

    def receive_data(self, data: bytes) -> None:
        if self._closed:
            return
        self._process_lines(self.framer.feed(data))

    def _process_lines(self, lines: List[str]) -> None:
        for line in lines:
            if self._closed:
                break

            if self.options.debug:
                self.logger.debug(f"Bridge connection processing line {line!r}")

            if self.state == ConnectionState.AWAITING_LOGIN:
                self._process_login_line(line)
            elif self.state == ConnectionState.LOGGED_IN:
                self._process_monitor_line(line)

    def _process_login_line(self, line: str) -> None:
        prompt = match_prompt(line)

        if prompt == PromptType.LOGIN:
            self.logger.debug("Login prompt received, sending username")
            self._write_line(self.options.username)
        elif prompt == PromptType.PASSWORD:
            self.logger.debug("Password prompt received, sending password")
            self._write_line(self.options.password)
        elif prompt == PromptType.READY:
            self.state = ConnectionState.LOGGED_IN
            self._cancel_login_timer()
            self.logger.info("Logged in to bridge")
            self._emit(LoggedIn())

    def _process_monitor_line(self, line: str) -> None:
        message = parse_monitor_message(line)
        if message is None:
            if line.startswith(MONITOR_PREFIX):
                self.logger.debug(f"Ignoring malformed monitor line {line!r}")
            return

        self._emit(MonitorMessageReceived.from_message(message))

    def _write_line(self, text: str) -> None:
        if self.writer is None or self.writer.is_closing():
            self.logger.warning("Cannot answer bridge prompt: not connected")
            return
        self.writer.write(f"{text}{LINE_TERMINATOR}".encode())

    def _emit(self, event: ConnectionEvent) -> None:
        for callback, event_type in list(self._subscribers):
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Bridge event subscriber failed: {e}")

        for queue in list(self._queues):
            queue.put_nowait(event)

    def _login_timed_out(self) -> None:
        self._login_timer = None
        if self._closed or self.state != ConnectionState.AWAITING_LOGIN:
            return

        self.logger.error(f"Bridge did not finish login within {self.options.login_timeout} seconds")
        self.close()

    def _cancel_login_timer(self) -> None:
        if self._login_timer is not None:
            self._login_timer.cancel()
            self._login_timer = None

    def close(self) -> None:
        if self._closed:
            return

        self._closed = True
        self._cancel_login_timer()
        self.framer.clear()

        if self._task is not None and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

        if self.writer is not None:
            try:
                self.writer.close()
            except Exception as e:
                self.logger.debug(f"Error closing writer: {e}")

        for queue in list(self._queues):
            queue.put_nowait(None)

        self._closed_event.set()
        self.logger.info("Bridge connection closed")

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

        if self.writer is not None:
            try:
                await self.writer.wait_closed()
            except Exception as e:
                self.logger.debug(f"Error waiting for writer to close: {e}")
