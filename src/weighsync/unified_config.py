"""Unified configuration for weighsync.

Configuration is stored in ~/.weighsync/config.toml
The local record store defaults to ~/.weighsync/weighsync.db (SQLite)
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from weighsync.sync.device import get_device_name

logger = logging.getLogger(__name__)

# Host names, IPv4 addresses and URLs must not carry quotes into the TOML file.
_TOML_SAFE_PATTERN = re.compile(r'^[^"\\\n\r]*$')


def get_weighsync_dir() -> Path:
    """Get weighsync data directory.

    Priority:
    1. WEIGHSYNC_DIR environment variable
    2. ~/.weighsync/
    """
    env_dir = os.environ.get("WEIGHSYNC_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".weighsync"


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(number, high))


def _toml_str(value: str) -> str:
    if not _TOML_SAFE_PATTERN.match(value):
        raise ValueError(f"Value cannot be written to config: {value!r}")
    return f'"{value}"'


@dataclass(frozen=True)
class PeerSettings:
    """LAN discovery and transfer endpoint settings."""

    discovery_port: int = 8766
    transfer_port: int = 8765
    fallback_port: int = 8767
    broadcast_address: str = "255.255.255.255"
    bind_host: str = "0.0.0.0"
    announce_interval: float = 5.0
    discovery_timeout: float = 3.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "discovery_port": self.discovery_port,
            "transfer_port": self.transfer_port,
            "fallback_port": self.fallback_port,
            "broadcast_address": self.broadcast_address,
            "bind_host": self.bind_host,
            "announce_interval": self.announce_interval,
            "discovery_timeout": self.discovery_timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PeerSettings:
        return cls(
            discovery_port=int(_clamp(data.get("discovery_port"), 1, 65535, 8766)),
            transfer_port=int(_clamp(data.get("transfer_port"), 1, 65535, 8765)),
            fallback_port=int(_clamp(data.get("fallback_port"), 1, 65535, 8767)),
            broadcast_address=str(data.get("broadcast_address", "255.255.255.255")),
            bind_host=str(data.get("bind_host", "0.0.0.0")),
            announce_interval=_clamp(data.get("announce_interval"), 1.0, 300.0, 5.0),
            discovery_timeout=_clamp(data.get("discovery_timeout"), 0.5, 60.0, 3.0),
        )


@dataclass(frozen=True)
class CloudSettings:
    """Cloud backup server settings. Empty ``server_url`` disables cloud sync."""

    server_url: str = ""
    pull_timeout: float = 30.0
    hash_timeout: float = 5.0
    ping_timeout: float = 5.0
    max_payload_bytes: int = 512_000
    batch_size: int = 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_url": self.server_url,
            "pull_timeout": self.pull_timeout,
            "hash_timeout": self.hash_timeout,
            "ping_timeout": self.ping_timeout,
            "max_payload_bytes": self.max_payload_bytes,
            "batch_size": self.batch_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CloudSettings:
        return cls(
            server_url=str(data.get("server_url", "")).rstrip("/"),
            pull_timeout=_clamp(data.get("pull_timeout"), 1.0, 600.0, 30.0),
            hash_timeout=_clamp(data.get("hash_timeout"), 1.0, 60.0, 5.0),
            ping_timeout=_clamp(data.get("ping_timeout"), 1.0, 60.0, 5.0),
            max_payload_bytes=int(
                _clamp(data.get("max_payload_bytes"), 1024, 100_000_000, 512_000)
            ),
            batch_size=int(_clamp(data.get("batch_size"), 1, 10_000, 100)),
        )


@dataclass(frozen=True)
class ScheduleSettings:
    """Background timer intervals, in seconds unless noted."""

    upload_interval: float = 300.0
    realtime_interval: float = 30.0
    network_interval: float = 30.0
    mismatch_debounce: float = 10.0
    suppression_minutes: float = 30.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "upload_interval": self.upload_interval,
            "realtime_interval": self.realtime_interval,
            "network_interval": self.network_interval,
            "mismatch_debounce": self.mismatch_debounce,
            "suppression_minutes": self.suppression_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleSettings:
        return cls(
            upload_interval=_clamp(data.get("upload_interval"), 10.0, 86_400.0, 300.0),
            realtime_interval=_clamp(data.get("realtime_interval"), 5.0, 3600.0, 30.0),
            network_interval=_clamp(data.get("network_interval"), 5.0, 3600.0, 30.0),
            mismatch_debounce=_clamp(data.get("mismatch_debounce"), 0.0, 3600.0, 10.0),
            suppression_minutes=_clamp(data.get("suppression_minutes"), 0.0, 1440.0, 30.0),
        )


@dataclass
class UnifiedConfig:
    """Unified configuration for weighsync.

    Storage location: ~/.weighsync/config.toml
    """

    # Base directory for all weighsync data
    data_dir: Path = field(default_factory=get_weighsync_dir)

    # Activation id of the logged-in installation (0 = not activated)
    tenant_id: int = 0

    device_name: str = field(default_factory=get_device_name)

    # Local store path; relative paths are resolved against data_dir
    db_path: str = "weighsync.db"

    peer: PeerSettings = field(default_factory=PeerSettings)
    cloud: CloudSettings = field(default_factory=CloudSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)

    # CLI preferences
    json_output: bool = False

    version: str = "1.0"

    @classmethod
    def load(cls, config_path: Path | None = None) -> UnifiedConfig:
        """Load configuration from file, or create default if doesn't exist."""
        if config_path is None:
            data_dir = get_weighsync_dir()
            config_path = data_dir / "config.toml"
        else:
            data_dir = config_path.parent

        if not config_path.exists():
            config = cls(data_dir=data_dir)
            config.save()
            logger.info("Created default configuration at %s", config_path)
            return config

        with open(config_path, "rb") as f:
            data = tomllib.load(f)

        tenant_raw = data.get("tenant_id", 0)
        try:
            tenant_id = max(0, int(tenant_raw))
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid tenant_id in config: %r", tenant_raw)
            tenant_id = 0

        return cls(
            data_dir=data_dir,
            tenant_id=tenant_id,
            device_name=str(data.get("device_name") or get_device_name()),
            db_path=str(data.get("db_path", "weighsync.db")),
            peer=PeerSettings.from_dict(data.get("peer", {})),
            cloud=CloudSettings.from_dict(data.get("cloud", {})),
            schedule=ScheduleSettings.from_dict(data.get("schedule", {})),
            json_output=bool(data.get("cli", {}).get("json_output", False)),
            version=str(data.get("version", "1.0")),
        )

    def save(self) -> None:
        """Save configuration to TOML file (atomic write via temp+rename)."""
        import tempfile

        self.data_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.data_dir / "config.toml"

        lines = [
            "# weighsync configuration",
            "",
            f"version = {_toml_str(self.version)}",
            f"tenant_id = {self.tenant_id}",
            f"device_name = {_toml_str(self.device_name)}",
            f"db_path = {_toml_str(self.db_path)}",
            "",
            "# LAN discovery and transfer endpoint",
            "[peer]",
            f"discovery_port = {self.peer.discovery_port}",
            f"transfer_port = {self.peer.transfer_port}",
            f"fallback_port = {self.peer.fallback_port}",
            f"broadcast_address = {_toml_str(self.peer.broadcast_address)}",
            f"bind_host = {_toml_str(self.peer.bind_host)}",
            f"announce_interval = {self.peer.announce_interval}",
            f"discovery_timeout = {self.peer.discovery_timeout}",
            "",
            "# Cloud backup server (empty server_url disables cloud sync)",
            "[cloud]",
            f"server_url = {_toml_str(self.cloud.server_url)}",
            f"pull_timeout = {self.cloud.pull_timeout}",
            f"hash_timeout = {self.cloud.hash_timeout}",
            f"ping_timeout = {self.cloud.ping_timeout}",
            f"max_payload_bytes = {self.cloud.max_payload_bytes}",
            f"batch_size = {self.cloud.batch_size}",
            "",
            "# Background timers (seconds)",
            "[schedule]",
            f"upload_interval = {self.schedule.upload_interval}",
            f"realtime_interval = {self.schedule.realtime_interval}",
            f"network_interval = {self.schedule.network_interval}",
            f"mismatch_debounce = {self.schedule.mismatch_debounce}",
            f"suppression_minutes = {self.schedule.suppression_minutes}",
            "",
            "# CLI preferences",
            "[cli]",
            f"json_output = {'true' if self.json_output else 'false'}",
        ]

        # Atomic write: write to temp file, then rename
        content = "\n".join(lines) + "\n"
        fd, tmp_path = tempfile.mkstemp(dir=str(self.data_dir), suffix=".toml.tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp_path).replace(config_path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    @property
    def config_path(self) -> Path:
        """Get path to config file."""
        return self.data_dir / "config.toml"

    @property
    def database_path(self) -> Path:
        path = Path(self.db_path).expanduser()
        if not path.is_absolute():
            path = self.data_dir / path
        return path

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "tenant_id": self.tenant_id,
            "device_name": self.device_name,
            "db_path": str(self.database_path),
            "peer": self.peer.to_dict(),
            "cloud": self.cloud.to_dict(),
            "schedule": self.schedule.to_dict(),
            "json_output": self.json_output,
            "version": self.version,
        }

    def set_tenant(self, tenant_id: int) -> None:
        """Set the activation id and save config."""
        if tenant_id <= 0:
            raise ValueError("tenant_id must be a positive activation id")
        self.tenant_id = tenant_id
        self.save()

    def set_cloud_url(self, server_url: str) -> None:
        """Set (or clear, with an empty string) the cloud server URL and save config."""
        url = server_url.strip().rstrip("/")
        if url and not url.startswith(("http://", "https://")):
            raise ValueError("Cloud server URL must start with http:// or https://")
        self.cloud = CloudSettings.from_dict({**self.cloud.to_dict(), "server_url": url})
        self.save()


# Singleton instance for easy access
_config: UnifiedConfig | None = None


def get_config(reload: bool = False) -> UnifiedConfig:
    """Get the unified configuration (singleton).

    Args:
        reload: Force reload from disk

    Returns:
        UnifiedConfig instance
    """
    global _config
    if _config is None or reload:
        _config = UnifiedConfig.load()
    return _config
