"""
Server-Sent Events emitted by the MQTT stream bridge.

Every frame written to a /stream response is one of three events:

- Diagnostic: connection-state changes (connecting, connected, subscribed,
  error, info, fatal)
- Telemetry: one forwarded MQTT message
- Keepalive: an SSE comment frame that keeps proxies from idling out
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class DiagnosticKind(Enum):
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    SUBSCRIBED = 'subscribed'
    ERROR = 'error'
    INFO = 'info'
    FATAL = 'fatal'


# Progress diagnostics go out on the default channel, like telemetry.
# Everything else shares 'diag', never 'error': EventSource reserves that name
# for transport failures.
DIAG_CHANNEL = 'diag'

DIAGNOSTIC_CHANNELS: Dict[DiagnosticKind, Optional[str]] = {
    DiagnosticKind.CONNECTING: None,
    DiagnosticKind.CONNECTED: None,
    DiagnosticKind.SUBSCRIBED: None,
    DiagnosticKind.ERROR: DIAG_CHANNEL,
    DiagnosticKind.INFO: DIAG_CHANNEL,
    DiagnosticKind.FATAL: DIAG_CHANNEL,
}


def to_json(data: dict) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(',', ':'))


def format_sse_frame(data: dict, event: Optional[str] = None) -> str:
    """Format one SSE frame. The data is always a single JSON line."""
    lines = []
    if event:
        lines.append(f'event: {event}')
    lines.append(f'data: {to_json(data)}')
    return '\n'.join(lines) + '\n\n'


@dataclass
class Diagnostic:
    kind: DiagnosticKind
    data: Dict[str, str]

    @property
    def channel(self) -> Optional[str]:
        return DIAGNOSTIC_CHANNELS[self.kind]

    def encode(self) -> str:
        return format_sse_frame(self.data, self.channel)

    @classmethod
    def connecting(cls, url: str, topic: str) -> 'Diagnostic':
        return cls(DiagnosticKind.CONNECTING, {'connecting': url, 'topic': topic})

    @classmethod
    def connected(cls, url: str) -> 'Diagnostic':
        return cls(DiagnosticKind.CONNECTED, {'connected': url})

    @classmethod
    def subscribed(cls, topic: str) -> 'Diagnostic':
        return cls(DiagnosticKind.SUBSCRIBED, {'subscribed': topic})

    @classmethod
    def error(cls, message: str) -> 'Diagnostic':
        return cls(DiagnosticKind.ERROR, {'error': message})

    @classmethod
    def info(cls, message: str) -> 'Diagnostic':
        return cls(DiagnosticKind.INFO, {'info': message})

    @classmethod
    def fatal(cls, message: str) -> 'Diagnostic':
        return cls(DiagnosticKind.FATAL, {'error': message})


@dataclass
class Telemetry:
    topic: str
    payload: str

    def encode(self) -> str:
        return format_sse_frame({'topic': self.topic, 'payload': self.payload})

    @classmethod
    def from_mqtt(cls, topic: str, payload: bytes) -> 'Telemetry':
        """Build a telemetry event from a raw MQTT message, decoding the payload best-effort."""
        return cls(topic=topic, payload=(payload or b'').decode('utf-8', errors='replace'))


@dataclass
class Keepalive:
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def encode(self) -> str:
        # Lines starting with ':' are comments, ignored by EventSource
        return f': ping {self.timestamp_ms}\n\n'
