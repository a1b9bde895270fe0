"""Endpoint monitoring automation.

Checks a list of HTTP(S) endpoints, reporting status codes and latency.
Supports pause/resume between checks and stop at any check boundary.
"""

import time
from typing import Any, Dict, List

import httpx
import structlog

from core.config_schema import (
    ConfigField,
    ConfigSchema,
    FieldType,
    FieldValidation,
)
from core.constants import AutomationType, Capability
from plugins.base import AutomationPlugin, PluginResult

logger = structlog.get_logger(__name__)


def _parse_urls(raw: Any) -> List[str]:
    if isinstance(raw, str):
        return [line.strip() for line in raw.splitlines() if line.strip()]
    return [str(u).strip() for u in raw or [] if str(u).strip()]


def _valid_urls(value: Any):
    bad = [u for u in _parse_urls(value) if not u.lower().startswith(("http://", "https://"))]
    if bad:
        return f"Invalid URL(s): {', '.join(bad)}"
    return None


class MonitoringPlugin(AutomationPlugin):
    """Check that endpoints answer with an expected status.

    Config:
        urls: One URL per line (required)
        expectedStatus: Status code counted as healthy (default: 200)
        timeoutSeconds: Per-request timeout (default: 10)
        failOnDown: Report failure when any endpoint is down (default: true)
    """

    type = AutomationType.MONITORING.value
    name = "Monitoring"
    version = "1.0.0"
    description = "HTTP endpoint availability and latency checks"
    author = "Automation Hub"
    icon = "📡"
    category = "system"
    capabilities = frozenset({Capability.STOP, Capability.PAUSE})

    def __init__(self, transport: httpx.AsyncBaseTransport = None):
        super().__init__()
        self._transport = transport

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema(
            fields=[
                ConfigField(
                    key="urls",
                    label="URLs",
                    type=FieldType.TEXTAREA,
                    required=True,
                    description="One URL per line",
                    validation=FieldValidation(custom=_valid_urls),
                ),
                ConfigField(
                    key="expectedStatus",
                    label="Expected status",
                    type=FieldType.NUMBER,
                    default=200,
                    validation=FieldValidation(min=100, max=599),
                ),
                ConfigField(
                    key="timeoutSeconds",
                    label="Timeout (seconds)",
                    type=FieldType.NUMBER,
                    default=10,
                    validation=FieldValidation(min=1, max=120),
                ),
                ConfigField(
                    key="failOnDown",
                    label="Fail when an endpoint is down",
                    type=FieldType.BOOLEAN,
                    default=True,
                ),
            ]
        )

    async def _check(self, client: httpx.AsyncClient, url: str, expected: int) -> Dict[str, Any]:
        start = time.monotonic()
        try:
            response = await client.get(url)
            latency_ms = round((time.monotonic() - start) * 1000, 2)
            status = "ok" if response.status_code == expected else "down"
            return {
                "url": url,
                "status": status,
                "status_code": response.status_code,
                "response_ms": latency_ms,
                "error": None,
            }
        except httpx.HTTPError as e:
            latency_ms = round((time.monotonic() - start) * 1000, 2)
            return {
                "url": url,
                "status": "down",
                "status_code": None,
                "response_ms": latency_ms,
                "error": str(e) or type(e).__name__,
            }

    async def execute(self, definition, context) -> PluginResult:
        params = definition.parameters
        urls = _parse_urls(params.get("urls"))
        expected = int(params.get("expectedStatus") or 200)
        timeout = float(params.get("timeoutSeconds") or 10)
        start = time.monotonic()

        results: List[Dict[str, Any]] = []
        async with httpx.AsyncClient(
            timeout=timeout, follow_redirects=True, transport=self._transport
        ) as client:
            for url in urls:
                await self.wait_if_paused(context.execution_id)
                if self.should_stop(context.execution_id):
                    await context.logger.warn(f"Monitoring stopped after {len(results)} check(s)")
                    return PluginResult(
                        success=False,
                        error="Monitoring stopped before completion",
                        data={"checks": results},
                    )
                check = await self._check(client, url, expected)
                results.append(check)
                await context.logger.info(
                    f"{url}: {check['status']} ({check['status_code']}) in {check['response_ms']}ms"
                )

        down = [c["url"] for c in results if c["status"] != "ok"]
        await context.storage.set("last_results", results)
        logger.info("Monitoring finished", checked=len(results), down=len(down))

        data = {"checks": results, "healthy": len(results) - len(down), "down": down}
        if down and params.get("failOnDown", True):
            return PluginResult(
                success=False,
                error=f"{len(down)} endpoint(s) down: {', '.join(down)}",
                data=data,
                duration=time.monotonic() - start,
            )
        return PluginResult(success=True, data=data, duration=time.monotonic() - start)
