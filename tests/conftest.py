"""Shared test fixtures for the OpenEntity test suite."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from openentity.config import SandboxSettings
from openentity.providers.base import LLMDriver, ProviderConfig
from openentity.providers.circuit_breaker import CircuitBreakerPolicy
from openentity.tools.registry import ToolRegistry
from openentity.tools.sandbox import ToolSandbox

# ─── Clock ─────────────────────────────────────────────────


class FakeClock:
    """Manually advanced clock for circuit breaker tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ─── Drivers ───────────────────────────────────────────────


class FakeDriver(LLMDriver):
    """Driver whose behaviour is scripted through its DriverBank."""

    def __init__(self, config: ProviderConfig, bank: "DriverBank"):
        super().__init__(config)
        self._bank = bank
        self.calls: list[list[dict[str, Any]]] = []

    async def chat(self, messages, options=None):
        self.calls.append(list(messages))
        delay = self._bank.delays.get(self.name)
        if delay:
            await asyncio.sleep(delay)
        error = self._bank.errors.get(self.name)
        if error is not None:
            raise error
        return self._bank.replies.get(self.name, f"reply from {self.name}")

    async def is_available(self):
        return self.name not in self._bank.errors


class DriverBank:
    """driver_factory for ProviderDispatcher, keyed by provider name."""

    def __init__(self):
        self.drivers: dict[str, FakeDriver] = {}
        self.errors: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.replies: dict[str, str] = {}
        self.created = 0

    def __call__(self, config: ProviderConfig) -> FakeDriver:
        self.created += 1
        driver = FakeDriver(config, self)
        self.drivers[config.name] = driver
        return driver

    def fail(self, name: str, error: Exception | None = None) -> None:
        self.errors[name] = error or RuntimeError(f"{name} is down")

    def recover(self, name: str) -> None:
        self.errors.pop(name, None)

    def calls(self, name: str) -> int:
        driver = self.drivers.get(name)
        return len(driver.calls) if driver else 0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def policy(clock):
    return CircuitBreakerPolicy(clock=clock)


@pytest.fixture
def bank():
    return DriverBank()


# ─── Tools ─────────────────────────────────────────────────


@pytest.fixture
def workspace(tmp_path) -> Path:
    """Directory tools are allowed to touch."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def tools_dir(tmp_path) -> Path:
    path = tmp_path / "tools"
    path.mkdir()
    return path


@pytest.fixture
def sandbox_settings(workspace):
    return SandboxSettings(allowed_paths=[str(workspace)], timeout_seconds=5.0)


@pytest.fixture
def sandbox(sandbox_settings):
    return ToolSandbox(sandbox_settings)


@pytest.fixture
def registry(sandbox, tools_dir):
    return ToolRegistry(sandbox=sandbox, tools_dir=tools_dir)


@pytest.fixture
def write_tool(tools_dir):
    """Write a tool source file into the tools directory and return its path."""

    def _write(filename: str, source: str) -> Path:
        path = tools_dir / filename
        path.write_text(source, encoding="utf-8")
        return path

    return _write
