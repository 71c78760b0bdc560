"""
MQTT -> Server-Sent Events bridge.

Each GET /stream request gets its own BridgeSession: one paho MQTT client,
one keepalive timer and one streaming HTTP response. The paho network loop
runs in its own thread; every callback is handed over to the asyncio event
loop before it touches session state.
"""

import os
import ssl
import math
import uuid
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional, Set, Union

from dotenv import load_dotenv
import paho.mqtt.client as mqtt

from stream_events import Diagnostic, Keepalive, Telemetry

StreamEvent = Union[Diagnostic, Telemetry, Keepalive]

# Load from custom env file
load_dotenv(dotenv_path="mqtt.env")

MQTT_DEFAULT_HOST_ENV_VAR = 'MQTT_DEFAULT_HOST'
SSE_KEEPALIVE_SECONDS_ENV_VAR = 'SSE_KEEPALIVE_SECONDS'
MQTT_RECONNECT_MIN_DELAY_ENV_VAR = 'MQTT_RECONNECT_MIN_DELAY'
MQTT_RECONNECT_MAX_DELAY_ENV_VAR = 'MQTT_RECONNECT_MAX_DELAY'

DEFAULT_BROKER_HOST = "broker.emqx.io"
DEFAULT_TOPIC = "devices/#"
DEFAULT_PORT = 1883
DEFAULT_TLS_PORT = 8883
DEFAULT_MQTT_KEEPALIVE = 30
DEFAULT_SSE_KEEPALIVE_SECONDS = 25.0
DEFAULT_RECONNECT_MIN_DELAY = 1
DEFAULT_RECONNECT_MAX_DELAY = 30

TRUTHY_FLAGS = {'1', 'true', 'yes', 'on'}


def parse_flag(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in TRUTHY_FLAGS


def parse_positive_int(value: Optional[str], default: int) -> int:
    """Parse a positive integer, falling back to the default for anything else."""
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def parse_positive_float(value: Optional[str], default: float) -> float:
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) and number > 0 else default


def generate_client_id() -> str:
    return f"sse-{uuid.uuid4().hex[:12]}"


@dataclass
class BridgeConfig:
    default_host: str = DEFAULT_BROKER_HOST
    sse_keepalive_seconds: float = DEFAULT_SSE_KEEPALIVE_SECONDS
    reconnect_min_delay: int = DEFAULT_RECONNECT_MIN_DELAY
    reconnect_max_delay: int = DEFAULT_RECONNECT_MAX_DELAY

    @classmethod
    def from_env(cls) -> 'BridgeConfig':
        """Read settings from the environment. Unusable values fall back to the defaults."""
        min_delay = parse_positive_int(os.getenv(MQTT_RECONNECT_MIN_DELAY_ENV_VAR), DEFAULT_RECONNECT_MIN_DELAY)
        max_delay = parse_positive_int(os.getenv(MQTT_RECONNECT_MAX_DELAY_ENV_VAR), DEFAULT_RECONNECT_MAX_DELAY)
        return cls(
            default_host=(os.getenv(MQTT_DEFAULT_HOST_ENV_VAR) or '').strip() or DEFAULT_BROKER_HOST,
            sse_keepalive_seconds=parse_positive_float(os.getenv(SSE_KEEPALIVE_SECONDS_ENV_VAR),
                                                       DEFAULT_SSE_KEEPALIVE_SECONDS),
            reconnect_min_delay=min_delay,
            # paho refuses a max delay below the min delay
            reconnect_max_delay=max(min_delay, max_delay),
        )


@dataclass
class StreamParams:
    host: str
    port: int
    topic: str
    tls: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    insecure: bool = False
    keepalive: int = DEFAULT_MQTT_KEEPALIVE
    client_id: str = ''

    @property
    def url(self) -> str:
        scheme = "mqtts" if self.tls else "mqtt"
        return f"{scheme}://{self.host}:{self.port}"

    @classmethod
    def from_query(cls, config: BridgeConfig, host: str = '', port: str = '', topic: str = '',
                   ssl: str = '0', user: str = '', password: str = '', insecure: str = '0',
                   keepalive: str = '', client_id: str = '') -> 'StreamParams':
        """Resolve raw query-string values. Nothing here is rejected, bad values fall back to defaults."""
        tls = parse_flag(ssl)
        return cls(
            host=host.strip() or config.default_host,
            port=parse_positive_int(port, DEFAULT_TLS_PORT if tls else DEFAULT_PORT),
            topic=topic.strip() or DEFAULT_TOPIC,
            tls=tls,
            username=user or None,
            password=password or None,
            insecure=tls and parse_flag(insecure),
            keepalive=parse_positive_int(keepalive, DEFAULT_MQTT_KEEPALIVE),
            client_id=client_id.strip() or generate_client_id(),
        )


class SessionState(Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    SUBSCRIBED = 'subscribed'
    ERROR = 'error'
    CLOSED = 'closed'


class BridgeSession:
    """Relays one MQTT topic subscription to one SSE response."""

    def __init__(self, params: StreamParams, config: BridgeConfig, logger: logging.Logger,
                 client_factory: Callable[..., Any] = mqtt.Client):
        self.params = params
        self.config = config
        self.logger = logger
        self.client_factory = client_factory
        self.session_id = uuid.uuid4().hex
        self.state = SessionState.IDLE

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue] = None
        self._client = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._subscribe_mid: Optional[int] = None
        self._loop_stopping: Optional[asyncio.Future] = None
        self._closed = False

    @property
    def client(self):
        return self._client

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def keepalive_running(self) -> bool:
        return self._keepalive_task is not None and not self._keepalive_task.done()

    def open(self):
        """Announce the target, create the MQTT client and start the keepalive timer.

        Must run on the event loop. A session can only be opened once.
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Stream session {self.session_id} already opened")

        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self.state = SessionState.CONNECTING
        self._emit(Diagnostic.connecting(self.params.url, self.params.topic))
        self.logger.info(f"[SSE] Session {self.session_id} connecting to {self.params.url} "
                         f"topic={self.params.topic} client_id={self.params.client_id}")

        try:
            self._client = self._create_client()
            self._client.connect_async(self.params.host, self.params.port, keepalive=self.params.keepalive)
            self._client.loop_start()
        except Exception as e:
            self.logger.error(f"[SSE] Session {self.session_id} could not create MQTT client: {e}")
            self._emit(Diagnostic.fatal(f"client create: {e}"))
            # The fatal diagnostic still has to reach the browser
            self.close(discard_pending=False)
            return

        self._keepalive_task = self._loop.create_task(self._keepalive())

    async def frames(self) -> AsyncIterator[str]:
        """Yield encoded SSE frames until the session is closed.

        Leaving the iteration early (browser disconnect) closes the session.
        """
        if self.state is SessionState.IDLE:
            self.open()
        if self._events is None:
            # Closed before it was ever opened
            return
        try:
            while True:
                event = await self._events.get()
                if event is None:
                    break
                yield event.encode()
        finally:
            self.close()

    def close(self, discard_pending: bool = True):
        """Tear down the session. Safe to call any number of times.

        Never blocks the event loop: stopping paho's network thread is handed
        to an executor, use wait_closed() to wait for it. Frames still queued
        are dropped unless discard_pending is False.
        """
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.CLOSED

        # Every step runs even if an earlier one fails
        self._best_effort("cancel keepalive", self._cancel_keepalive)
        self._best_effort("disconnect MQTT client", self._disconnect_client)
        self._best_effort("stop MQTT network loop", self._stop_client_loop)
        self._best_effort("end stream", lambda: self._end_stream(discard_pending))

        self.logger.info(f"[SSE] Session {self.session_id} closed")

    async def wait_closed(self):
        """Wait until paho's network thread has stopped after close()."""
        if self._loop_stopping is not None:
            await asyncio.wait([self._loop_stopping])

    def _best_effort(self, description: str, step: Callable[[], None]):
        try:
            step()
        except Exception as e:
            self.logger.warning(f"[SSE] Session {self.session_id} failed to {description}: {e}")

    def _cancel_keepalive(self):
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()

    def _disconnect_client(self):
        if self._client is not None:
            self._client.disconnect()

    def _stop_client_loop(self):
        if self._client is None:
            return
        # loop_stop() joins paho's thread, which may be asleep in reconnect backoff
        # or stuck in a blocking connect
        try:
            self._loop_stopping = self._loop.run_in_executor(None, self._client.loop_stop)
        except RuntimeError:
            # Event loop already closed, nothing left to stall
            self._client.loop_stop()
            return
        self._loop_stopping.add_done_callback(self._on_loop_stopped)

    def _on_loop_stopped(self, future: asyncio.Future):
        if not future.cancelled() and future.exception() is not None:
            self.logger.warning(f"[SSE] Session {self.session_id} failed to stop MQTT network loop: "
                                f"{future.exception()}")

    def _end_stream(self, discard_pending: bool):
        if self._events is None:
            return
        if discard_pending:
            while not self._events.empty():
                self._events.get_nowait()
        self._events.put_nowait(None)

    def _create_client(self):
        client = self.client_factory(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.params.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if self.params.username:
            client.username_pw_set(self.params.username, self.params.password)
        if self.params.tls:
            if self.params.insecure:
                client.tls_set(cert_reqs=ssl.CERT_NONE)
                client.tls_insecure_set(True)
            else:
                client.tls_set()
        client.reconnect_delay_set(min_delay=self.config.reconnect_min_delay,
                                   max_delay=self.config.reconnect_max_delay)

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect
        return client

    async def _keepalive(self):
        while True:
            await asyncio.sleep(self.config.sse_keepalive_seconds)
            self._emit(Keepalive())

    def _emit(self, event: StreamEvent):
        if self._closed:
            return
        self._events.put_nowait(event)

    def _call_in_loop(self, callback: Callable, *args):
        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # Event loop already closed, process is shutting down
            self.logger.debug(f"[SSE] Session {self.session_id} dropped MQTT callback after loop close")

    # paho callbacks, called from the MQTT network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._call_in_loop(self._handle_connect, reason_code)

    def _on_connect_fail(self, client, userdata):
        self._call_in_loop(self._handle_connect_fail)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self._call_in_loop(self._handle_subscribe, mid, list(reason_code_list))

    def _on_message(self, client, userdata, message):
        self._call_in_loop(self._handle_message, message.topic, message.payload)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        self._call_in_loop(self._handle_disconnect, reason_code)

    # Handlers, called on the event loop

    def _handle_connect(self, reason_code):
        if self._closed:
            return
        if reason_code.is_failure:
            self.state = SessionState.ERROR
            self.logger.warning(f"[SSE] Session {self.session_id} broker refused connection: {reason_code}")
            self._emit(Diagnostic.error(f"Connection refused: {reason_code}"))
            return

        self.state = SessionState.CONNECTED
        self.logger.info(f"[SSE] Session {self.session_id} connected to {self.params.url}")
        self._emit(Diagnostic.connected(self.params.url))

        try:
            result, mid = self._client.subscribe(self.params.topic, qos=0)
        except ValueError as e:
            self.logger.warning(f"[SSE] Session {self.session_id} invalid topic filter {self.params.topic!r}: {e}")
            self._emit(Diagnostic.error(f"subscribe: {e}"))
            return
        if result != mqtt.MQTT_ERR_SUCCESS:
            self.logger.warning(f"[SSE] Session {self.session_id} subscribe failed: {mqtt.error_string(result)}")
            self._emit(Diagnostic.error(f"subscribe: {mqtt.error_string(result)}"))
            return
        self._subscribe_mid = mid

    def _handle_connect_fail(self):
        if self._closed:
            return
        self.state = SessionState.ERROR
        self.logger.warning(f"[SSE] Session {self.session_id} could not reach {self.params.url}")
        self._emit(Diagnostic.error(f"Connection failed: {self.params.url} unreachable"))

    def _handle_subscribe(self, mid, reason_codes):
        if self._closed or mid != self._subscribe_mid:
            return
        failures = [rc for rc in reason_codes if rc.is_failure]
        if failures:
            self.logger.warning(f"[SSE] Session {self.session_id} broker rejected subscription "
                                f"to {self.params.topic}: {failures[0]}")
            self._emit(Diagnostic.error(f"subscribe: {failures[0]}"))
            return

        self.state = SessionState.SUBSCRIBED
        self.logger.info(f"[SSE] Session {self.session_id} subscribed to {self.params.topic}")
        self._emit(Diagnostic.subscribed(self.params.topic))

    def _handle_message(self, topic: str, payload: bytes):
        if self._closed:
            return
        self.logger.debug(f"[MQTT] {topic}: {payload!r}")
        self._emit(Telemetry.from_mqtt(topic, payload))

    def _handle_disconnect(self, reason_code):
        if self._closed:
            return
        if reason_code is not None and reason_code.is_failure:
            self.state = SessionState.ERROR
            self.logger.warning(f"[SSE] Session {self.session_id} lost broker connection: {reason_code}")
            self._emit(Diagnostic.error(f"Disconnected: {reason_code}"))
        else:
            # paho reconnects on its own
            self.state = SessionState.CONNECTING
        self._emit(Diagnostic.info("mqtt close"))


class SessionRegistry:
    """Live stream sessions, so shutdown can close them."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._sessions: Set[BridgeSession] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session: BridgeSession) -> bool:
        return session in self._sessions

    def add(self, session: BridgeSession):
        self._sessions.add(session)

    def discard(self, session: BridgeSession):
        self._sessions.discard(session)

    async def relay(self, session: BridgeSession) -> AsyncIterator[str]:
        """Stream a session's frames while keeping it registered."""
        self.add(session)
        try:
            async for frame in session.frames():
                yield frame
        finally:
            session.close()
            self.discard(session)

    def close_all(self) -> List[BridgeSession]:
        sessions = list(self._sessions)
        if sessions:
            self.logger.info(f"Closing {len(sessions)} open stream session(s)")
        for session in sessions:
            session.close()
        self._sessions.clear()
        return sessions

    async def shutdown(self):
        """Close every session and wait for their MQTT network threads to stop."""
        sessions = self.close_all()
        await asyncio.gather(*(session.wait_closed() for session in sessions))
