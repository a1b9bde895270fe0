"""Tests for the plugin base class, the execution context and the bundled plugins."""

import zipfile

import httpx
import pytest

from core.constants import Capability, Environment
from core.exceptions import ContextConstructionError, PluginExecutionError, UnsupportedOperationError
from execution.context import (
    EnvironmentSecretProvider,
    ExecutionContextFactory,
    KeyValueStore,
    StaticSecretProvider,
)
from execution.models import AutomationDefinition, ResourceUsage
from plugins.base import PluginResult
from plugins.implementations.backup import BackupPlugin
from plugins.implementations.monitoring import MonitoringPlugin


def _definition(automation_type, parameters, automation_id="a1"):
    return AutomationDefinition(id=automation_id, name=automation_id, type=automation_type,
                                parameters=parameters)


@pytest.fixture
def store():
    return KeyValueStore()


@pytest.fixture
def make_context(store):
    factory = ExecutionContextFactory(StaticSecretProvider(), store=store)

    async def _make(definition, execution_id="exec_1"):
        return await factory.build(definition, execution_id, "tester")

    return _make


@pytest.mark.unit
class TestPluginResult:
    def test_coerce_dict(self):
        result = PluginResult.coerce({
            "success": True,
            "data": {"n": 1},
            "metrics": {"duration": 2.5, "resourceUsage": {"cpu": 1.0, "memory": 2.0, "network": 0.5}},
        })
        assert result.success is True
        assert result.duration == 2.5
        assert result.resource_usage == ResourceUsage(cpu=1.0, memory=2.0, network=0.5)

    def test_failure_gets_an_error_message(self):
        assert PluginResult.coerce({"success": False}).error
        assert PluginResult.coerce(PluginResult(success=False, error="disk full")).error == "disk full"

    @pytest.mark.parametrize("raw", [None, "ok", 42, {"data": 1}, {"success": "yes"}])
    def test_malformed_results(self, raw):
        with pytest.raises(PluginExecutionError):
            PluginResult.coerce(raw)

    def test_malformed_metrics(self):
        with pytest.raises(PluginExecutionError):
            PluginResult.coerce({"success": True, "metrics": {"resource_usage": {"gpu": 1}}})

    def test_to_execution_result(self):
        result = PluginResult(success=False, error="nope", logs=["plugin line"])
        execution_result = result.to_execution_result(["context line"])
        assert execution_result.logs == ["context line", "plugin line"]
        assert execution_result.error_kind == "plugin_error"


@pytest.mark.unit
class TestPluginBase:
    async def test_pause_requires_capability(self):
        plugin = BackupPlugin()
        assert not plugin.supports(Capability.PAUSE)
        with pytest.raises(UnsupportedOperationError):
            await plugin.pause("exec_1")

    async def test_stop_and_pause_bookkeeping(self):
        plugin = MonitoringPlugin()
        await plugin.pause("exec_1")
        assert plugin.is_paused("exec_1")

        await plugin.stop("exec_1")
        status = await plugin.get_status("exec_1")
        assert status == {"execution_id": "exec_1", "stop_requested": True, "paused": False}

        plugin.release("exec_1")
        assert not plugin.should_stop("exec_1")
        assert not plugin.is_paused("exec_1")

    def test_info(self):
        info = MonitoringPlugin().info()
        assert info["type"] == "monitoring"
        assert info["capabilities"] == ["pause", "stop"]


@pytest.mark.unit
class TestExecutionContext:
    async def test_context_contents(self, store):
        factory = ExecutionContextFactory(
            StaticSecretProvider({"api_token": "t0ken", "unused": "x"}),
            store=store,
            environment=Environment.STAGING,
        )
        context = await factory.build(_definition("quick", {}), "exec_9", "alice", ["api_token"])

        assert context.execution_id == "exec_9"
        assert context.automation_id == "a1"
        assert context.user_id == "alice"
        assert context.environment == Environment.STAGING
        assert dict(context.secrets) == {"api_token": "t0ken"}
        with pytest.raises(TypeError):
            context.secrets["api_token"] = "changed"

        await context.logger.info("hello")
        assert context.logger.lines[-1].endswith("[INFO] hello")

    async def test_missing_secret(self):
        factory = ExecutionContextFactory(StaticSecretProvider({}))
        with pytest.raises(ContextConstructionError) as exc_info:
            await factory.build(_definition("quick", {}), "exec_1", "alice", ["api_token"])
        assert "api_token" in exc_info.value.message

    @pytest.mark.parametrize("provided", [{"api_token": ""}, {"api_token": None}])
    async def test_empty_secret_counts_as_missing(self, provided):
        factory = ExecutionContextFactory(StaticSecretProvider(provided))
        with pytest.raises(ContextConstructionError) as exc_info:
            await factory.build(_definition("quick", {}), "exec_1", "alice", ["api_token"])
        assert "api_token" in exc_info.value.message

    async def test_empty_environment_secret(self, monkeypatch):
        monkeypatch.setenv("HUB_SECRET_API_TOKEN", "")
        factory = ExecutionContextFactory(EnvironmentSecretProvider("HUB_SECRET_"))
        with pytest.raises(ContextConstructionError):
            await factory.build(_definition("quick", {}), "exec_1", "alice", ["api_token"])

    async def test_environment_secrets(self, monkeypatch):
        monkeypatch.setenv("HUB_SECRET_API_TOKEN", "from-env")
        provider = EnvironmentSecretProvider("HUB_SECRET_")
        found = await provider.get_secrets(_definition("quick", {}), ["api_token", "other"])
        assert found == {"api_token": "from-env"}

    async def test_storage_is_namespaced(self, make_context):
        first = await make_context(_definition("quick", {}, automation_id="a1"))
        second = await make_context(_definition("quick", {}, automation_id="a2"))

        await first.storage.set("cursor", 10)
        assert await first.storage.get("cursor") == 10
        assert await second.storage.get("cursor") is None
        assert await first.storage.keys() == ["cursor"]
        assert await first.storage.delete("cursor") is True


@pytest.fixture
def source_tree(tmp_path):
    source = tmp_path / "data"
    (source / "sub").mkdir(parents=True)
    (source / "a.txt").write_text("alpha")
    (source / "sub" / "b.txt").write_text("bravo")
    (source / "sub" / "c.tmp").write_text("scratch")
    return source


@pytest.mark.unit
class TestBackupPlugin:
    def test_schema_requires_paths(self):
        result = BackupPlugin().validate_config({})
        assert result.invalid_fields == ["sourcePath", "targetPath"]

    async def test_copies_tree(self, tmp_path, source_tree, make_context):
        plugin = BackupPlugin()
        definition = _definition("backup", {
            **plugin.get_default_config(),
            "sourcePath": str(source_tree),
            "targetPath": str(tmp_path / "backups"),
            "excludePatterns": "*.tmp\n",
        })
        context = await make_context(definition)

        result = await plugin.execute(definition, context)

        assert result.success
        assert result.data["files_copied"] == 2
        assert result.data["bytes_copied"] == 10
        (backup_dir,) = (tmp_path / "backups").iterdir()
        assert backup_dir.name.startswith("data-")
        assert (backup_dir / "a.txt").read_text() == "alpha"
        assert (backup_dir / "sub" / "b.txt").exists()
        assert not (backup_dir / "sub" / "c.tmp").exists()
        assert await context.storage.get("last_backup") == str(backup_dir)

    async def test_compress_to_zip(self, tmp_path, source_tree, make_context):
        plugin = BackupPlugin()
        definition = _definition("backup", {
            "sourcePath": str(source_tree),
            "targetPath": str(tmp_path / "backups"),
            "compress": True,
            "archiveFormat": "zip",
        })
        result = await plugin.execute(definition, await make_context(definition))

        assert result.success
        archive = result.data["destination"]
        assert archive.endswith(".zip")
        with zipfile.ZipFile(archive) as zf:
            files = sorted(n for n in zf.namelist() if not n.endswith("/"))
        assert files == ["a.txt", "sub/b.txt", "sub/c.tmp"]
        assert [p.suffix for p in (tmp_path / "backups").iterdir()] == [".zip"]

    async def test_retention(self, tmp_path, source_tree, make_context):
        plugin = BackupPlugin()
        definition = _definition("backup", {
            "sourcePath": str(source_tree),
            "targetPath": str(tmp_path / "backups"),
            "retentionCount": 2,
        })
        destinations = []
        for i in range(3):
            result = await plugin.execute(definition, await make_context(definition, f"exec_{i}"))
            destinations.append(result.data["destination"])

        remaining = sorted(str(p) for p in (tmp_path / "backups").iterdir())
        assert remaining == sorted(destinations[1:])
        assert len(result.data["pruned"]) == 1

    async def test_missing_source(self, tmp_path, make_context):
        definition = _definition("backup", {
            "sourcePath": str(tmp_path / "nope"),
            "targetPath": str(tmp_path / "backups"),
        })
        result = await BackupPlugin().execute(definition, await make_context(definition))
        assert not result.success
        assert "does not exist" in result.error

    async def test_stop_before_copy(self, tmp_path, source_tree, make_context):
        plugin = BackupPlugin()
        definition = _definition("backup", {
            "sourcePath": str(source_tree),
            "targetPath": str(tmp_path / "backups"),
        })
        await plugin.stop("exec_1")
        result = await plugin.execute(definition, await make_context(definition, "exec_1"))

        assert not result.success
        assert result.data == {"files_copied": 0}
        assert list((tmp_path / "backups").iterdir()) == []


def _status_transport(statuses):
    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.get(request.url.host)
        if status is None:
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(status)

    return httpx.MockTransport(handler)


@pytest.mark.unit
class TestMonitoringPlugin:
    def test_url_validation(self):
        plugin = MonitoringPlugin()
        assert plugin.validate_config({"urls": "https://a.example.com\nhttp://b.example.com"}).valid
        result = plugin.validate_config({"urls": "https://a.example.com\nftp://files.example.com"})
        assert result.field_errors["urls"] == ["Invalid URL(s): ftp://files.example.com"]

    async def test_all_endpoints_ok(self, make_context):
        plugin = MonitoringPlugin(transport=_status_transport({"a.example.com": 200, "b.example.com": 200}))
        definition = _definition("monitoring", {
            **plugin.get_default_config(),
            "urls": "https://a.example.com\nhttps://b.example.com",
        })
        context = await make_context(definition)

        result = await plugin.execute(definition, context)

        assert result.success
        assert result.data["healthy"] == 2
        assert result.data["down"] == []
        assert len(await context.storage.get("last_results")) == 2
        assert len(context.logger.lines) == 2

    async def test_down_endpoint_fails(self, make_context):
        plugin = MonitoringPlugin(transport=_status_transport({"a.example.com": 200, "b.example.com": 503}))
        definition = _definition("monitoring", {
            "urls": ["https://a.example.com", "https://b.example.com", "https://c.example.com"],
        })
        result = await plugin.execute(definition, await make_context(definition))

        assert not result.success
        assert result.data["down"] == ["https://b.example.com", "https://c.example.com"]
        checks = {c["url"]: c for c in result.data["checks"]}
        assert checks["https://b.example.com"]["status_code"] == 503
        assert checks["https://c.example.com"]["error"] == "unreachable"

    async def test_fail_on_down_disabled(self, make_context):
        plugin = MonitoringPlugin(transport=_status_transport({}))
        definition = _definition("monitoring", {"urls": "https://a.example.com", "failOnDown": False})
        result = await plugin.execute(definition, await make_context(definition))

        assert result.success
        assert result.data["down"] == ["https://a.example.com"]

    async def test_stop_between_checks(self, make_context):
        plugin = MonitoringPlugin(transport=_status_transport({"a.example.com": 200}))
        definition = _definition("monitoring", {"urls": "https://a.example.com"})
        await plugin.stop("exec_1")

        result = await plugin.execute(definition, await make_context(definition, "exec_1"))

        assert not result.success
        assert result.data == {"checks": []}
