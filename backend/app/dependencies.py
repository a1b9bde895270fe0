"""Component wiring and FastAPI dependency injection functions."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request, WebSocket

from app.config import Settings, get_settings
from core.constants import Environment
from db.database import create_db_engine
from events.bus import EventBus
from events.webhooks import WebhookDispatcher
from execution.context import EnvironmentSecretProvider, ExecutionContextFactory, SecretProvider
from execution.engine import ExecutionEngine
from execution.metrics import MetricsAggregator
from plugins.registry import PluginRegistry, register_builtin_plugins
from services.automation_service import AutomationService
from services.repository import InMemoryRepository, Repository, SqlAlchemyRepository
from triggers.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class AutomationHub:
    """Every long-lived component of one running hub."""

    settings: Settings
    registry: PluginRegistry
    repository: Repository
    event_bus: EventBus
    metrics: MetricsAggregator
    engine: ExecutionEngine
    scheduler: Scheduler
    service: AutomationService
    webhooks: Optional[WebhookDispatcher] = None


def build_repository(settings: Settings) -> Repository:
    """SQLAlchemy repository when DATABASE_URL is set, in-memory otherwise."""
    if not settings.DATABASE_URL:
        return InMemoryRepository()
    engine = create_db_engine(
        settings.DATABASE_URL,
        echo=settings.SQLALCHEMY_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
    )
    return SqlAlchemyRepository(engine)


def _environment(settings: Settings) -> Environment:
    try:
        return Environment(settings.ENVIRONMENT)
    except ValueError:
        return Environment.DEVELOPMENT


def build_hub(
    settings: Optional[Settings] = None,
    repository: Optional[Repository] = None,
    registry: Optional[PluginRegistry] = None,
    secret_provider: Optional[SecretProvider] = None,
    builtin_plugins: bool = True,
) -> AutomationHub:
    """Assemble registry, storage, event bus, engine, scheduler and service."""
    settings = settings or get_settings()
    registry = registry or PluginRegistry()
    if builtin_plugins:
        register_builtin_plugins(registry)
        registry.discover_entry_points()

    repository = repository or build_repository(settings)
    event_bus = EventBus(
        handler_timeout=settings.EVENT_HANDLER_TIMEOUT_SECONDS,
        buffer_size=settings.EVENT_BUFFER_SIZE,
    )
    metrics = MetricsAggregator()
    engine = ExecutionEngine(
        registry=registry,
        repository=repository,
        event_bus=event_bus,
        metrics=metrics,
        context_factory=ExecutionContextFactory(
            secret_provider=secret_provider or EnvironmentSecretProvider(settings.SECRET_PREFIX),
            environment=_environment(settings),
        ),
        timeout=settings.EXECUTION_TIMEOUT_SECONDS,
        stop_grace_period=settings.STOP_GRACE_PERIOD_SECONDS,
        max_concurrent=settings.MAX_CONCURRENT_EXECUTIONS,
        history_limit=settings.EXECUTION_HISTORY_LIMIT,
        default_user_id=settings.DEFAULT_USER_ID,
    )
    scheduler = Scheduler(engine, event_bus, tick_seconds=settings.SCHEDULER_TICK_SECONDS)
    service = AutomationService(registry, repository, engine, scheduler, event_bus)

    webhooks = None
    if settings.webhook_urls_list:
        webhooks = WebhookDispatcher(
            settings.webhook_urls_list,
            secret=settings.WEBHOOK_SECRET,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        )
        event_bus.subscribe(webhooks)
        logger.info("Webhook dispatcher subscribed (%d URL(s))", len(webhooks.urls))

    return AutomationHub(
        settings=settings,
        registry=registry,
        repository=repository,
        event_bus=event_bus,
        metrics=metrics,
        engine=engine,
        scheduler=scheduler,
        service=service,
        webhooks=webhooks,
    )


def get_hub(request: Request) -> AutomationHub:
    return request.app.state.hub


def get_service(request: Request) -> AutomationService:
    """Provide the automation service for API endpoints."""
    return request.app.state.hub.service


def get_registry(request: Request) -> PluginRegistry:
    return request.app.state.hub.registry


def get_engine(request: Request) -> ExecutionEngine:
    return request.app.state.hub.engine


def get_ws_hub(websocket: WebSocket) -> AutomationHub:
    return websocket.app.state.hub


async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """User attributed to an operation: X-User-ID header or the configured default."""
    return x_user_id or get_settings().DEFAULT_USER_ID
