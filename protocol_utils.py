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
import re
import codecs
import logging
from typing import Optional, List, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum

LINE_TERMINATOR = "\r\n"
MONITOR_PREFIX = "~"
FIELD_SEPARATOR = ","

LOGIN_PROMPT = re.compile(r"^login:\s*")
PASSWORD_PROMPT = re.compile(r"^password:\s*")
READY_PROMPT = re.compile(r"^GNET>\s*")

class PromptType(Enum):
    LOGIN = "login"
    PASSWORD = "password"
    READY = "ready"

def match_prompt(line: str) -> Optional[PromptType]:
    if LOGIN_PROMPT.match(line):
        return PromptType.LOGIN
    elif PASSWORD_PROMPT.match(line):
        return PromptType.PASSWORD
    elif READY_PROMPT.match(line):
        return PromptType.READY
    return None

@dataclass(frozen=True)
class MonitorMessage:
    keyword: str
    integration_id: str
    command_fields: Tuple[str, ...] = field(default_factory=tuple)
    raw: str = ""

def parse_monitor_message(line: str) -> Optional[MonitorMessage]:
    """Decode a ``~KEYWORD,<id>,<field>,...`` status line, or return None."""
    fields = line.split(FIELD_SEPARATOR)
    first = fields[0]
    if not first or first[0] != MONITOR_PREFIX:
        return None
    if len(fields) < 2:
        return None

    return MonitorMessage(
        keyword=first[1:],
        integration_id=fields[1],
        command_fields=tuple(fields[2:]),
        raw=line
    )

@dataclass(frozen=True)
class LoggedIn:
    pass

@dataclass(frozen=True)
class MonitorMessageReceived:
    integration_id: str
    command_fields: Tuple[str, ...]
    message: Optional[MonitorMessage] = None

    @classmethod
    def from_message(cls, message: MonitorMessage) -> "MonitorMessageReceived":
        return cls(
            integration_id=message.integration_id,
            command_fields=tuple(message.command_fields),
            message=message
        )

ConnectionEvent = Union[LoggedIn, MonitorMessageReceived]

class LineFramer:
    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._fragment = ""
        self.logger = logging.getLogger(__name__)

    @property
    def pending(self) -> str:
        return self._fragment

    @property
    def flushable(self) -> bool:
        # A trailing CR or field separator means the rest of the line is still coming
        if not self._fragment.strip():
            return False
        return not self._fragment.endswith(("\r", FIELD_SEPARATOR))

    def feed(self, data: bytes) -> List[str]:
        self._fragment += self._decoder.decode(data)

        segments = self._fragment.split(LINE_TERMINATOR)
        self._fragment = segments.pop()

        lines = [segment for segment in segments if segment.strip()]
        if len(segments) != len(lines):
            self.logger.debug(f"Dropped {len(segments) - len(lines)} empty line(s)")
        return lines

    def flush(self) -> List[str]:
        self._fragment += self._decoder.decode(b"", final=True)
        fragment, self._fragment = self._fragment, ""

        if fragment.endswith("\r"):
            fragment = fragment[:-1]
        if fragment.strip():
            return [fragment]
        return []

    def clear(self) -> None:
        self._decoder.reset()
        self._fragment = ""
