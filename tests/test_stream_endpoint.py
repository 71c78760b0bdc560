"""
End-to-end tests for the /stream Server-Sent Events endpoint.
"""
import asyncio
import pytest

from main import stream_registry
from tests.utils.fake_mqtt import FakeMQTTFactory
from tests.utils.sse import frame_data, open_stream, parse_frame

SCENARIO_QUERY = {"host": "test.broker.local", "topic": "devices/x/telemetry"}


@pytest.mark.timeout(10)
class TestStreamEndpoint:
    """Test the HTTP side of the bridge."""

    def test_stream_headers(self, stream_app):
        result = asyncio.run(open_stream(stream_app, SCENARIO_QUERY, lambda frame, frames: True))

        assert result.status == 200
        assert result.headers["content-type"] == "text/event-stream"
        assert result.headers["cache-control"] == "no-cache, no-transform"
        assert result.headers["connection"] == "keep-alive"

    def test_full_relay(self, stream_app, mqtt_factory: FakeMQTTFactory):
        def on_frame(frame, frames):
            client = mqtt_factory.clients[0]
            if len(frames) == 1:
                client.fire_connect()
            elif len(frames) == 2:
                client.fire_suback()
            elif len(frames) == 3:
                client.fire_message("devices/x/telemetry", b'{"lat":30.1,"lon":-97.2}')
            return len(frames) == 4

        result = asyncio.run(open_stream(stream_app, SCENARIO_QUERY, on_frame))

        assert result.frames == [
            'data: {"connecting":"mqtt://test.broker.local:1883","topic":"devices/x/telemetry"}\n\n',
            'data: {"connected":"mqtt://test.broker.local:1883"}\n\n',
            'data: {"subscribed":"devices/x/telemetry"}\n\n',
            'data: {"topic":"devices/x/telemetry","payload":"{\\"lat\\":30.1,\\"lon\\":-97.2}"}\n\n',
        ]

    def test_query_parameters_reach_the_client(self, stream_app, mqtt_factory: FakeMQTTFactory):
        query = dict(SCENARIO_QUERY, ssl="1", port="8884", user="k9", **{"pass": "secret", "clientId": "tablet-7"})

        result = asyncio.run(open_stream(stream_app, query, lambda frame, frames: True))

        assert frame_data(result.frames[0]) == {"connecting": "mqtts://test.broker.local:8884",
                                                 "topic": "devices/x/telemetry"}
        client = mqtt_factory.clients[0]
        assert client.client_id == "tablet-7"
        assert client.credentials == ("k9", "secret")
        assert client.connect_args == ("test.broker.local", 8884, 30)

    def test_defaults_from_config(self, stream_app, mqtt_factory: FakeMQTTFactory):
        result = asyncio.run(open_stream(stream_app, {}, lambda frame, frames: True))

        assert frame_data(result.frames[0]) == {"connecting": "mqtt://broker.test.local:1883", "topic": "devices/#"}
        assert mqtt_factory.clients[0].client_id.startswith("sse-")

    def test_broker_error_keeps_stream_open(self, stream_app, mqtt_factory: FakeMQTTFactory):
        def on_frame(frame, frames):
            client = mqtt_factory.clients[0]
            if len(frames) == 1:
                client.fire_connect("Server unavailable")
            elif len(frames) == 2:
                client.fire_message("devices/x/telemetry", b"after-error")
            return len(frames) == 3

        result = asyncio.run(open_stream(stream_app, SCENARIO_QUERY, on_frame))

        assert parse_frame(result.frames[1])["event"] == "diag"
        assert frame_data(result.frames[1]) == {"error": "Connection refused: Server unavailable"}
        assert frame_data(result.frames[2])["payload"] == "after-error"

    def test_disconnect_tears_down_session(self, stream_app, mqtt_factory: FakeMQTTFactory):
        active_during_stream = []

        def on_frame(frame, frames):
            active_during_stream.append(len(stream_registry))
            return True

        asyncio.run(open_stream(stream_app, SCENARIO_QUERY, on_frame))

        assert active_during_stream == [1]
        assert len(stream_registry) == 0
        client = mqtt_factory.clients[0]
        assert client.disconnect_calls == 1
        assert client.loop_stopped

    def test_client_create_failure(self, stream_app, mqtt_factory: FakeMQTTFactory):
        mqtt_factory.fail_with = ValueError("Invalid host.")

        # The stream ends on its own, the browser never disconnects
        result = asyncio.run(open_stream(stream_app, SCENARIO_QUERY, lambda frame, frames: False))

        assert result.status == 200
        assert len(result.frames) == 2
        assert result.frames[1] == 'event: diag\ndata: {"error":"client create: Invalid host."}\n\n'
        assert len(stream_registry) == 0

    def test_shutdown_closes_open_streams(self, stream_app, mqtt_factory: FakeMQTTFactory):
        def on_frame(frame, frames):
            stream_registry.close_all()
            return False

        result = asyncio.run(open_stream(stream_app, SCENARIO_QUERY, on_frame))

        assert len(result.frames) == 1
        assert mqtt_factory.clients[0].disconnect_calls == 1
        assert len(stream_registry) == 0

    def test_concurrent_streams_get_own_clients(self, stream_app, mqtt_factory: FakeMQTTFactory):
        async def two_streams():
            return await asyncio.gather(
                open_stream(stream_app, SCENARIO_QUERY, lambda frame, frames: True),
                open_stream(stream_app, SCENARIO_QUERY, lambda frame, frames: True),
            )

        asyncio.run(two_streams())

        assert len(mqtt_factory.clients) == 2
        first, second = mqtt_factory.clients
        assert first.client_id != second.client_id
        assert first.disconnect_calls == second.disconnect_calls == 1
