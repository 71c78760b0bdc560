"""
Common test data fixtures and utilities.
"""
import base64
from typing import Dict, Any, List

# 1x1 transparent PNG
PNG_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)


class TestDataFixtures:
    """Common test data for use across tests."""

    @staticmethod
    def track_data(device_id: str = "esp-shelby-01",
                   topic: str = "devices/esp-shelby-01/telemetry",
                   host: str = "broker.emqx.io",
                   port: int = 8883,
                   ssl: bool = True) -> Dict[str, Any]:
        """Generate track creation data."""
        return {
            "deviceId": device_id,
            "topic": topic,
            "host": host,
            "port": port,
            "ssl": ssl
        }

    @staticmethod
    def breadcrumbs(count: int = 3,
                    latitude: float = 30.2672,
                    longitude: float = -97.7431) -> List[Dict[str, float]]:
        """Generate breadcrumb points (Austin coordinates by default)."""
        return [
            {"lat": latitude + i * 0.0001, "lon": longitude + i * 0.0001, "t": 1700000000000 + i * 5000}
            for i in range(count)
        ]

    @staticmethod
    def finish_data(distance_m: float = 1250.5,
                    duration_ms: int = 900000,
                    **extra) -> Dict[str, Any]:
        """Generate end-of-track summary data."""
        data = {
            "distance_m": distance_m,
            "duration_ms": duration_ms,
            "pace_min_per_km": 12.0,
            "avg_speed_kmh": 5.0,
            "weather": {"temp_c": 21.5, "wind_kmh": 8},
            "elevation": {"gain_m": 12, "loss_m": 9},
            "points": TestDataFixtures.breadcrumbs()
        }
        data.update(extra)
        return data

    @staticmethod
    def png_data_url(data: bytes = PNG_PIXEL) -> str:
        return "data:image/png;base64," + base64.b64encode(data).decode()

    @staticmethod
    def report_data(handler: str = "Jane Doe",
                    dog: str = "Shelby",
                    **extra) -> Dict[str, Any]:
        """Generate incident report data."""
        data = {
            "handler": handler,
            "dog": dog,
            "email": "jane@example.com",
            "notes": "Lost scent near the creek"
        }
        data.update(extra)
        return data


class TestAssertions:
    """Common assertion helpers for tests."""

    @staticmethod
    def assert_auth_response(response_data: Dict[str, Any]):
        """Assert authentication response structure."""
        assert "token" in response_data
        assert "email" in response_data
        assert "uuid" in response_data

    @staticmethod
    def assert_report_no(report_no: str):
        """Assert a report number looks like YYYY-MM-NN."""
        year, month, sequence = report_no.split("-")
        assert len(year) == 4 and year.isdigit()
        assert len(month) == 2 and 1 <= int(month) <= 12
        assert len(sequence) >= 2 and sequence.isdigit()

    @staticmethod
    def assert_keepalive_frame(frame: str):
        """Assert an SSE comment ping frame."""
        assert frame.startswith(": ping ")
        assert frame.endswith("\n\n")
        assert frame[len(": ping "):-2].isdigit()
