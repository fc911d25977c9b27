"""Shared test fixtures for the funding opportunity engine."""

import asyncio
from decimal import Decimal

import pytest

from fundarb.config import AppSettings, EngineSettings, NotificationSettings, RiskSettings

# 2023-11-14T22:13:20Z
T0 = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock whose sleep() moves time forward instantly."""

    def __init__(self, now: float = T0, overshoot: float = 0.0) -> None:
        self.now = now
        self.overshoot = overshoot
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0) + self.overshoot
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (log-only notifications, API off)."""
    return AppSettings(
        log_level="DEBUG",
        engine=EngineSettings(
            enabled_on_start=True,
            scan_interval_seconds=10.0,
            entry_margin_fraction=Decimal("0.01"),
            max_margin_per_trade=Decimal("100"),
            target_leverage=5,
        ),
        risk=RiskSettings(),
        notify=NotificationSettings(telegram_enabled=False),
    )
