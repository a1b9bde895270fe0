"""Execution context handed to plugins.

The factory assembles, per execution: identifiers, environment tag,
resolved secrets (read-only), a logger whose lines are also captured
into the execution result, and key-value storage namespaced to the
automation.
"""

import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog

from core.constants import Environment
from core.exceptions import ContextConstructionError
from core.utils import utc_now
from execution.models import AutomationDefinition

logger = structlog.get_logger(__name__)


class ExecutionLogger:
    """Async logger given to plugins.

    Every line goes to structlog with the execution identifiers bound
    and is kept in `lines` for the execution result.
    """

    def __init__(self, execution_id: str, automation_id: str, automation_type: str):
        self._log = structlog.get_logger("automation.plugin").bind(
            execution_id=execution_id,
            automation_id=automation_id,
            automation_type=automation_type,
        )
        self.lines: List[str] = []

    def _capture(self, level: str, message: str) -> None:
        self.lines.append(f"{utc_now().isoformat()} [{level.upper()}] {message}")

    async def debug(self, message: str, **kwargs) -> None:
        self._capture("debug", message)
        self._log.debug(message, **kwargs)

    async def info(self, message: str, **kwargs) -> None:
        self._capture("info", message)
        self._log.info(message, **kwargs)

    async def warn(self, message: str, **kwargs) -> None:
        self._capture("warn", message)
        self._log.warning(message, **kwargs)

    async def error(self, message: str, **kwargs) -> None:
        self._capture("error", message)
        self._log.error(message, **kwargs)


class KeyValueStore:
    """Process-local key-value store backing plugin storage."""

    def __init__(self):
        self._data: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]


class ScopedStorage:
    """Async storage view confined to one automation's namespace."""

    def __init__(self, store: KeyValueStore, namespace: str):
        self._store = store
        self._prefix = f"{namespace}:"

    async def get(self, key: str, default: Any = None) -> Any:
        return self._store.get(self._prefix + key, default)

    async def set(self, key: str, value: Any) -> None:
        self._store.set(self._prefix + key, value)

    async def delete(self, key: str) -> bool:
        return self._store.delete(self._prefix + key)

    async def keys(self) -> List[str]:
        return [k[len(self._prefix):] for k in self._store.keys(self._prefix)]


class SecretProvider(ABC):
    """Resolves secrets a plugin requires. Storage mechanics live elsewhere."""

    @abstractmethod
    async def get_secrets(
        self, definition: AutomationDefinition, names: Iterable[str]
    ) -> Dict[str, str]:
        """Return the subset of `names` that could be resolved."""


class EnvironmentSecretProvider(SecretProvider):
    """Reads `<prefix><NAME>` environment variables."""

    def __init__(self, prefix: str = "AUTOMATION_SECRET_"):
        self.prefix = prefix

    async def get_secrets(self, definition, names):
        found = {}
        for name in names:
            value = os.environ.get(f"{self.prefix}{name.upper()}")
            if value:
                found[name] = value
        return found


class StaticSecretProvider(SecretProvider):
    def __init__(self, secrets: Optional[Mapping[str, str]] = None):
        self._secrets = dict(secrets or {})

    async def get_secrets(self, definition, names):
        return {n: self._secrets[n] for n in names if n in self._secrets}


@dataclass
class ExecutionContext:
    execution_id: str
    automation_id: str
    user_id: str
    environment: Environment
    secrets: Mapping[str, str]
    logger: ExecutionLogger
    storage: ScopedStorage
    started_at: Any = field(default_factory=utc_now)


class ExecutionContextFactory:
    """Builds one ExecutionContext per execution."""

    def __init__(
        self,
        secret_provider: Optional[SecretProvider] = None,
        store: Optional[KeyValueStore] = None,
        environment: Environment = Environment.DEVELOPMENT,
    ):
        self.secret_provider = secret_provider or EnvironmentSecretProvider()
        self.store = store or KeyValueStore()
        self.environment = environment

    async def build(
        self,
        definition: AutomationDefinition,
        execution_id: str,
        user_id: str,
        required_secrets: Iterable[str] = (),
    ) -> ExecutionContext:
        """
        Assemble the context for one execution.

        Raises:
            ContextConstructionError: A required secret could not be resolved
                or the secret provider failed.
        """
        names = list(required_secrets)
        try:
            secrets = await self.secret_provider.get_secrets(definition, names) if names else {}
        except Exception as e:
            raise ContextConstructionError(f"Secret provider failed: {e}") from e

        # An empty value counts as missing, whatever the provider returned
        missing = [n for n in names if secrets.get(n) in (None, "")]
        if missing:
            raise ContextConstructionError(
                f"Missing required secret(s) for automation {definition.id}: {', '.join(missing)}"
            )

        return ExecutionContext(
            execution_id=execution_id,
            automation_id=definition.id,
            user_id=user_id,
            environment=self.environment,
            secrets=MappingProxyType({n: secrets[n] for n in names}),
            logger=ExecutionLogger(execution_id, definition.id, definition.type),
            storage=ScopedStorage(self.store, definition.id),
        )
