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

import os
import sys
import asyncio
import logging
import json
from typing import Optional
from dataclasses import dataclass

from bridge_connection import (
    DEFAULT_PORT,
    DEFAULT_USERNAME,
    DEFAULT_PASSWORD,
    BridgeConnectionOptions,
    CasetaBridgeConnection,
)
from protocol_utils import ConnectionEvent, LoggedIn, MonitorMessageReceived

class EventLoopRunner:
    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.winloop_available = False
        self.uvloop_available = False

        if sys.platform in ('win32', 'cygwin', 'cli'):
            try:
                import winloop
                self.winloop_available = True
                self.logger.debug("winloop available for Windows")
            except ImportError:
                self.logger.debug("winloop not available")
        else:
            try:
                import uvloop
                self.uvloop_available = True
                self.logger.debug("uvloop available for Unix/Linux")
            except ImportError:
                self.logger.debug("uvloop not available")

    def run_loop(self, main_coro):
        if sys.platform in ('win32', 'cygwin', 'cli'):
            if self.winloop_available:
                from winloop import run
                self.logger.info("Using winloop event loop")
                return run(main_coro)
        elif self.uvloop_available:
            from uvloop import run
            self.logger.info("Using uvloop event loop")
            return run(main_coro)

        self.logger.info("Using standard asyncio event loop")
        return asyncio.run(main_coro)

@dataclass
class MonitorConfig:
    host: str = ""
    port: int = DEFAULT_PORT
    username: str = DEFAULT_USERNAME
    password: str = DEFAULT_PASSWORD
    debug: bool = False
    connect_timeout: Optional[float] = 30.0
    login_timeout: Optional[float] = None
    fragment_timeout: Optional[float] = 0.1
    connection_retries: int = 3
    retry_delay: float = 5.0
    log_file: Optional[str] = "caseta-monitor.log"

    def __post_init__(self):
        if self.connection_retries < 0:
            raise ValueError("Connection retries must not be negative")
        if self.retry_delay < 0:
            raise ValueError("Retry delay must not be negative")

        self.port = self.connection_options().port

    def connection_options(self) -> BridgeConnectionOptions:
        return BridgeConnectionOptions(
            host=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            debug=self.debug,
            connect_timeout=self.connect_timeout,
            login_timeout=self.login_timeout,
            fragment_timeout=self.fragment_timeout
        )

class ConfigurationManager:
    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def load_config(self, config_file: str = "bridge-config.json") -> MonitorConfig:
        try:
            if os.path.exists(config_file):
                with open(config_file, 'r') as f:
                    config_data = json.load(f)

                self.logger.info(f"Loaded configuration from {config_file}")

                config = MonitorConfig(
                    host=config_data.get('host', ''),
                    port=config_data.get('port', DEFAULT_PORT),
                    username=config_data.get('username', DEFAULT_USERNAME),
                    password=config_data.get('password', DEFAULT_PASSWORD),
                    debug=config_data.get('debug', False),
                    connect_timeout=config_data.get('connect_timeout', 30.0),
                    login_timeout=config_data.get('login_timeout'),
                    fragment_timeout=config_data.get('fragment_timeout', 0.1),
                    connection_retries=config_data.get('connection_retries', 3),
                    retry_delay=config_data.get('retry_delay', 5.0),
                    log_file=config_data.get('log_file', 'caseta-monitor.log')
                )

                return config
            else:
                raise FileNotFoundError(f"Configuration file {config_file} not found")

        except Exception as e:
            self.logger.error(f"Failed to load configuration: {e}")
            raise

class BridgeMonitor:
    """Owns bridge sessions and reconnects when one closes."""

    def __init__(self, config: MonitorConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.connection: Optional[CasetaBridgeConnection] = None
        self.attempts = 0
        self.running = True

    def handle_event(self, event: ConnectionEvent) -> None:
        if isinstance(event, LoggedIn):
            self.logger.info(f"Logged in to bridge {self.config.host or 'localhost'}:{self.config.port}")
            self.attempts = 0
        elif isinstance(event, MonitorMessageReceived):
            self.logger.info(f"Integration {event.integration_id}: {','.join(event.command_fields)}")

    async def run(self) -> int:
        while self.running:
            self.attempts += 1
            self.connection = CasetaBridgeConnection(self.config.connection_options())
            self.connection.subscribe(self.handle_event)

            try:
                await self.connection.wait_closed()
            except asyncio.CancelledError:
                self.connection.close()
                await self.connection.wait_closed()
                raise

            if not self.running:
                break

            if self.attempts > self.config.connection_retries:
                self.logger.error(f"Bridge connection lost, giving up after {self.attempts} attempt(s)")
                return 1

            self.logger.warning(f"Bridge connection lost, reconnecting in {self.config.retry_delay} seconds")
            await asyncio.sleep(self.config.retry_delay)

        return 0

    def stop(self) -> None:
        self.running = False
        if self.connection is not None:
            self.connection.close()

async def main(config_file: str = "bridge-config.json") -> int:
    try:
        config_manager = ConfigurationManager()
        config = config_manager.load_config(config_file)

        monitor = BridgeMonitor(config)
        return await monitor.run()

    except Exception as e:
        logging.error(f"Monitor failed: {e}")
        return 1

def configure_logging(debug_enabled: bool, log_file: Optional[str]) -> None:
    log_level = logging.DEBUG if debug_enabled else logging.INFO
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s" if debug_enabled else "[%(levelname)s] %(message)s"

    log_handlers = [logging.StreamHandler()]
    if log_file:
        try:
            log_handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except Exception as log_exc:
            logging.basicConfig(level=log_level, format=log_format)
            logging.getLogger(__name__).warning(f"Failed to open log file {log_file}: {log_exc}")
        else:
            logging.basicConfig(level=log_level, format=log_format, handlers=log_handlers)
    else:
        logging.basicConfig(level=log_level, format=log_format)

if __name__ == "__main__":
    config_file = sys.argv[1] if len(sys.argv) > 1 else "bridge-config.json"

    try:
        startup_config = ConfigurationManager().load_config(config_file)
        debug_enabled = startup_config.debug
        log_file = startup_config.log_file
    except Exception:
        debug_enabled = False
        log_file = None

    configure_logging(debug_enabled, log_file)

    try:
        logging.info("Caseta Bridge Monitor v1.0.0 starting")
        runner = EventLoopRunner()
        result = runner.run_loop(main(config_file))
        sys.exit(result)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)
