"""Backup automation.

Copies a file or directory tree into a timestamped folder under the
target path, optionally packing it into an archive. File copies run in
a worker thread; stop requests are honored between files.
"""

import asyncio
import fnmatch
import os
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List

import structlog

from core.config_schema import (
    ConfigField,
    ConfigGroup,
    ConfigSchema,
    FieldDependency,
    FieldOption,
    FieldType,
    FieldValidation,
)
from core.constants import AutomationType, Capability
from core.utils import utc_now
from plugins.base import AutomationPlugin, PluginResult

logger = structlog.get_logger(__name__)


def _collect_files(source: Path, exclude: List[str]) -> List[Path]:
    if source.is_file():
        return [source]
    files = []
    for root, _dirs, names in os.walk(source):
        for name in names:
            path = Path(root) / name
            rel = path.relative_to(source).as_posix()
            if any(fnmatch.fnmatch(rel, pattern) for pattern in exclude):
                continue
            files.append(path)
    return sorted(files)


def _prune_old_backups(target: Path, prefix: str, keep: int) -> List[str]:
    """Delete the oldest backups beyond `keep`. Returns removed names."""
    entries = sorted(p for p in target.iterdir() if p.name.startswith(prefix))
    removed = []
    for old in entries[:-keep] if keep > 0 else []:
        if old.is_dir():
            shutil.rmtree(old)
        else:
            old.unlink()
        removed.append(old.name)
    return removed


class BackupPlugin(AutomationPlugin):
    """Copy data to a backup location.

    Config:
        sourcePath: File or directory to back up (required)
        targetPath: Directory receiving backups (required)
        compress: Pack the copy into an archive (default: false)
        archiveFormat: "zip" | "gztar" (only when compress is true)
        excludePatterns: Glob patterns relative to sourcePath to skip
        retentionCount: Number of backups to keep (default: 7)
    """

    type = AutomationType.BACKUP.value
    name = "Backup"
    version = "1.0.0"
    description = "Automatic backup of files and directories"
    author = "Automation Hub"
    icon = "🛡️"
    category = "system"
    capabilities = frozenset({Capability.STOP})

    def get_config_schema(self) -> ConfigSchema:
        return ConfigSchema(
            fields=[
                ConfigField(
                    key="sourcePath",
                    label="Source path",
                    type=FieldType.TEXT,
                    required=True,
                    placeholder="/var/lib/app",
                    group="paths",
                ),
                ConfigField(
                    key="targetPath",
                    label="Target path",
                    type=FieldType.TEXT,
                    required=True,
                    placeholder="/backups",
                    group="paths",
                ),
                ConfigField(
                    key="compress",
                    label="Compress",
                    type=FieldType.BOOLEAN,
                    default=False,
                    group="options",
                ),
                ConfigField(
                    key="archiveFormat",
                    label="Archive format",
                    type=FieldType.SELECT,
                    default="zip",
                    options=(FieldOption("ZIP", "zip"), FieldOption("tar.gz", "gztar")),
                    depends_on=FieldDependency(field="compress", value=True),
                    group="options",
                ),
                ConfigField(
                    key="excludePatterns",
                    label="Exclude patterns",
                    type=FieldType.TEXTAREA,
                    description="One glob pattern per line",
                    group="options",
                ),
                ConfigField(
                    key="retentionCount",
                    label="Backups to keep",
                    type=FieldType.NUMBER,
                    default=7,
                    validation=FieldValidation(min=1, max=365),
                    group="options",
                ),
            ],
            groups=[
                ConfigGroup(id="paths", label="Paths"),
                ConfigGroup(id="options", label="Options", collapsible=True, default_expanded=False),
            ],
        )

    async def execute(self, definition, context) -> PluginResult:
        params = definition.parameters
        source = Path(params["sourcePath"]).expanduser()
        target = Path(params["targetPath"]).expanduser()
        exclude = [
            line.strip() for line in (params.get("excludePatterns") or "").splitlines()
            if line.strip()
        ]
        start = time.monotonic()

        if not source.exists():
            return PluginResult(success=False, error=f"Source path does not exist: {source}")

        prefix = f"{source.name or 'root'}-"
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        destination = target / f"{prefix}{stamp}"

        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)
        files = await asyncio.to_thread(_collect_files, source, exclude)
        await context.logger.info(f"Backing up {len(files)} file(s) from {source} to {destination}")

        copied = 0
        copied_bytes = 0
        base = source if source.is_dir() else source.parent
        for path in files:
            if self.should_stop(context.execution_id):
                await context.logger.warn(f"Backup stopped after {copied} file(s)")
                await asyncio.to_thread(shutil.rmtree, destination, True)
                return PluginResult(
                    success=False,
                    error="Backup stopped before completion",
                    data={"files_copied": copied},
                )
            dest = destination / path.relative_to(base)
            await asyncio.to_thread(dest.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, path, dest)
            copied += 1
            copied_bytes += path.stat().st_size

        output: Any = str(destination)
        if params.get("compress"):
            archive_format = params.get("archiveFormat") or "zip"
            if not files:
                await asyncio.to_thread(destination.mkdir, parents=True, exist_ok=True)
            output = await asyncio.to_thread(
                shutil.make_archive, str(destination), archive_format, str(destination)
            )
            await asyncio.to_thread(shutil.rmtree, destination, True)
            await context.logger.info(f"Archive written to {output}")

        removed = await asyncio.to_thread(
            _prune_old_backups, target, prefix, int(params.get("retentionCount") or 7)
        )
        if removed:
            await context.logger.info(f"Pruned {len(removed)} old backup(s)")

        await context.storage.set("last_backup", output)
        data: Dict[str, Any] = {
            "destination": output,
            "files_copied": copied,
            "bytes_copied": copied_bytes,
            "pruned": removed,
        }
        logger.info("Backup finished", destination=output, files=copied)
        return PluginResult(success=True, data=data, duration=time.monotonic() - start)
