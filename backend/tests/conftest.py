"""Shared pytest fixtures for the Automation Hub test suite.

Provides:
- Small in-test plugins covering success, failure, hangs, pause/stop
- In-memory repository, event bus, engine, scheduler and service
- A controllable clock for scheduler tests
- FastAPI test client (httpx.AsyncClient)
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("STOP_GRACE_PERIOD_SECONDS", "1")

from core.config_schema import ConfigField, ConfigSchema, FieldType, FieldValidation  # noqa: E402
from core.constants import Capability  # noqa: E402
from events.bus import EventBus  # noqa: E402
from execution.context import ExecutionContextFactory, StaticSecretProvider  # noqa: E402
from execution.engine import ExecutionEngine  # noqa: E402
from execution.models import AutomationDefinition  # noqa: E402
from plugins.base import AutomationPlugin, PluginResult  # noqa: E402
from plugins.registry import PluginRegistry  # noqa: E402
from services.automation_service import AutomationService  # noqa: E402
from services.repository import InMemoryRepository  # noqa: E402
from triggers.scheduler import Scheduler  # noqa: E402


# ---------------------------------------------------------------------------
# Test plugins
# ---------------------------------------------------------------------------

class QuickPlugin(AutomationPlugin):
    """Succeeds immediately, echoing its parameters."""

    type = "quick"
    name = "Quick"
    description = "Returns at once"
    author = "tests"

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema(fields=[
            ConfigField(key="message", label="Message", type=FieldType.TEXT, default="hello"),
        ])

    async def execute(self, definition, context) -> PluginResult:
        await context.logger.info("quick run")
        return PluginResult(success=True, data=dict(definition.parameters))


class FailingPlugin(AutomationPlugin):
    type = "failing"
    name = "Failing"
    description = "Raises from execute"
    author = "tests"

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema()

    async def execute(self, definition, context) -> PluginResult:
        raise RuntimeError("boom")


class MalformedPlugin(AutomationPlugin):
    type = "malformed"
    name = "Malformed"
    description = "Returns something that is not a result"
    author = "tests"

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema()

    async def execute(self, definition, context):
        return "definitely not a result"


class HangingPlugin(AutomationPlugin):
    """Never resolves and ignores stop requests."""

    type = "hanging"
    name = "Hanging"
    description = "Never returns"
    author = "tests"

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema()

    async def execute(self, definition, context) -> PluginResult:
        await asyncio.Event().wait()


class GatedPlugin(AutomationPlugin):
    """Runs until the test opens the gate."""

    type = "gated"
    name = "Gated"
    description = "Waits on a test-controlled gate"
    author = "tests"

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.calls = 0

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema()

    async def execute(self, definition, context) -> PluginResult:
        self.calls += 1
        self.started.set()
        await self.gate.wait()
        return PluginResult(success=True, data={"calls": self.calls})


class CooperativePlugin(AutomationPlugin):
    """Works in small steps, honoring pause and stop between steps."""

    type = "cooperative"
    name = "Cooperative"
    description = "Pausable step runner"
    author = "tests"
    capabilities = frozenset({Capability.STOP, Capability.PAUSE})

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema(fields=[
            ConfigField(
                key="steps", label="Steps", type=FieldType.NUMBER, default=1000,
                validation=FieldValidation(min=1),
            ),
        ])

    async def execute(self, definition, context) -> PluginResult:
        steps = int(definition.parameters.get("steps", 1000))
        for done in range(steps):
            await self.wait_if_paused(context.execution_id)
            if self.should_stop(context.execution_id):
                return PluginResult(success=False, error="stopped", data={"steps": done})
            await asyncio.sleep(0.01)
        return PluginResult(success=True, data={"steps": steps})


class SecretPlugin(AutomationPlugin):
    type = "secretive"
    name = "Secretive"
    description = "Needs an API token"
    author = "tests"
    required_secrets = ("api_token",)

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema()

    async def execute(self, definition, context) -> PluginResult:
        return PluginResult(success=True, data={"token_length": len(context.secrets["api_token"])})


class TargetPathBackupPlugin(AutomationPlugin):
    """Minimal backup-type plugin whose only required field is targetPath."""

    type = "backup"
    name = "Backup (test)"
    description = "Requires a target path"
    author = "tests"

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema(fields=[
            ConfigField(key="targetPath", label="Target path", type=FieldType.TEXT, required=True),
        ])

    async def execute(self, definition, context):
        await self.gate.wait()
        return {"success": True}


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable clock advanced by hand."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def at_ms(self, origin: datetime, ms: int) -> datetime:
        self.now = origin + timedelta(milliseconds=ms)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Core component fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def gated_plugin() -> GatedPlugin:
    return GatedPlugin()


@pytest.fixture
def registry(gated_plugin) -> PluginRegistry:
    registry = PluginRegistry()
    for plugin in (
        QuickPlugin(),
        FailingPlugin(),
        MalformedPlugin(),
        HangingPlugin(),
        CooperativePlugin(),
        SecretPlugin(),
        gated_plugin,
    ):
        registry.register(plugin)
    return registry


@pytest.fixture
def backup_plugin(registry) -> TargetPathBackupPlugin:
    plugin = TargetPathBackupPlugin()
    registry.register(plugin)
    return plugin


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest_asyncio.fixture
async def event_bus() -> AsyncGenerator[EventBus, None]:
    bus = EventBus(handler_timeout=1.0)
    yield bus
    await bus.close()


@pytest.fixture
def events(event_bus) -> list:
    """Every event published on the bus, in order."""
    received = []
    event_bus.subscribe(received.append)
    return received


@pytest_asyncio.fixture
async def engine(registry, repository, event_bus) -> AsyncGenerator[ExecutionEngine, None]:
    engine = ExecutionEngine(
        registry=registry,
        repository=repository,
        event_bus=event_bus,
        context_factory=ExecutionContextFactory(StaticSecretProvider({"api_token": "t0ken"})),
        timeout=5.0,
        stop_grace_period=0.3,
        max_concurrent=3,
    )
    yield engine
    await engine.shutdown()


@pytest.fixture
def scheduler(engine, event_bus, clock) -> Scheduler:
    return Scheduler(engine, event_bus, clock=clock)


@pytest_asyncio.fixture
async def service(registry, repository, engine, scheduler, event_bus) -> AsyncGenerator[AutomationService, None]:
    service = AutomationService(registry, repository, engine, scheduler, event_bus)
    await service.startup(start_scheduler=False)
    yield service
    await service.shutdown()


@pytest.fixture
def add_automation(repository):
    """Store a definition directly, bypassing the service."""

    async def _add(automation_id: str, automation_type: str, **kwargs) -> AutomationDefinition:
        definition = AutomationDefinition(
            id=automation_id,
            name=kwargs.pop("name", automation_id),
            type=automation_type,
            **kwargs,
        )
        await repository.save_automation(definition)
        return definition

    return _add


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(registry, repository, backup_plugin):
    """FastAPI app wired to the test registry and in-memory repository."""
    from app.config import get_settings
    from app.dependencies import build_hub
    from app.main import create_app

    hub = build_hub(
        get_settings(),
        repository=repository,
        registry=registry,
        secret_provider=StaticSecretProvider({"api_token": "t0ken"}),
        builtin_plugins=False,
    )
    test_app = create_app(hub)
    await hub.service.startup(start_scheduler=False)

    yield test_app

    await hub.service.shutdown()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
