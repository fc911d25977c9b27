"""Tests for structured logging setup."""

import structlog

from fundarb import __version__
from fundarb.logging import SERVICE_NAME, add_service_info, setup_logging


class TestServiceInfo:
    def test_stamps_service_and_version(self) -> None:
        event = add_service_info(None, "info", {"event": "engine_starting"})

        assert event == {
            "event": "engine_starting",
            "service": SERVICE_NAME,
            "version": __version__,
        }

    def test_explicit_fields_win(self) -> None:
        event = add_service_info(None, "info", {"event": "x", "service": "api"})
        assert event["service"] == "api"

    def test_setup_installs_processor(self, monkeypatch) -> None:
        monkeypatch.setenv("LOG_FORMAT", "json")
        try:
            setup_logging("DEBUG")

            assert add_service_info in structlog.get_config()["processors"]
        finally:
            structlog.reset_defaults()
