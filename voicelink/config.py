from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml


DEFAULT_REGIONS: Dict[str, List[str]] = {
    "asia": ["hongkong", "singapore", "sydney"],
    "eu": ["eu", "amsterdam", "frankfurt", "russia"],
    "us": ["us", "brazil"],
}


@dataclass
class DiscordConfig:
    token: str
    shard_count: int = 1


@dataclass
class NodeConfig:
    host: str
    port: int = 80
    region: Optional[str] = None
    password: str = "youshallnotpass"
    reconnect_timeout_seconds: float = 5.0


@dataclass
class ManagerConfig:
    default_region: str = "us"
    failover_rate_seconds: float = 0.25
    failover_limit: int = 1
    resume_offset_ms: int = 2000
    handshake_timeout_seconds: float = 10.0
    history_size: int = 50
    regions: Dict[str, List[str]] = field(
        default_factory=lambda: {key: list(value) for key, value in DEFAULT_REGIONS.items()}
    )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: Optional[str] = None
    max_bytes: int = 1_048_576
    backup_count: int = 5


@dataclass
class AppConfig:
    discord: DiscordConfig
    nodes: List[NodeConfig]
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    _config_dir: str = field(init=False, repr=False, default="")

    @property
    def config_dir(self) -> Path:
        config_dir = self._config_dir or "."
        return Path(config_dir)

    def resolve_paths(self) -> None:
        if self.logging.log_file:
            log_file = Path(self.logging.log_file)
            if not log_file.is_absolute():
                self.logging.log_file = str(self.config_dir / log_file)


def _validate_nodes(nodes: Any) -> List[NodeConfig]:
    if isinstance(nodes, (str, Mapping)) or not isinstance(nodes, Sequence):
        raise TypeError("nodes must be a sequence of node mappings")

    parsed: List[NodeConfig] = []
    seen_hosts: set[str] = set()
    for index, entry in enumerate(nodes):
        if not isinstance(entry, Mapping):
            raise TypeError(
                f"nodes entry at index {index} must be a mapping, got {type(entry).__name__}"
            )
        host = str(entry.get("host", "")).strip()
        if not host:
            raise ValueError(f"nodes entry at index {index} is missing a host")
        if host in seen_hosts:
            raise ValueError(f"Node host '{host}' is configured more than once")
        seen_hosts.add(host)

        port = int(entry.get("port", 80))
        if not 0 < port < 65536:
            raise ValueError(f"Node '{host}' has an invalid port: {port}")

        region = entry.get("region")
        reconnect_timeout = float(entry.get("reconnect_timeout_seconds", 5.0))
        if reconnect_timeout <= 0:
            raise ValueError(f"Node '{host}' reconnect_timeout_seconds must be greater than zero")

        parsed.append(
            NodeConfig(
                host=host,
                port=port,
                region=str(region).strip().lower() if region else None,
                password=str(entry.get("password", "youshallnotpass")),
                reconnect_timeout_seconds=reconnect_timeout,
            )
        )

    if not parsed:
        raise ValueError("At least one voice node must be configured")

    return parsed


def _validate_regions(regions: Any) -> Dict[str, List[str]]:
    if regions is None:
        return {key: list(value) for key, value in DEFAULT_REGIONS.items()}
    if not isinstance(regions, Mapping):
        raise TypeError("manager.regions must map region names to endpoint prefixes")

    normalized: Dict[str, List[str]] = {}
    for key, prefixes in regions.items():
        if isinstance(prefixes, str) or not isinstance(prefixes, Sequence):
            raise TypeError(f"manager.regions.{key} must be a sequence of endpoint prefixes")
        cleaned = [str(prefix).strip().lower() for prefix in prefixes if str(prefix).strip()]
        if not cleaned:
            raise ValueError(f"manager.regions.{key} must list at least one endpoint prefix")
        normalized[str(key).strip().lower()] = cleaned
    return normalized


def load_config(path: Path | str) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        raw_config = yaml.safe_load(handle) or {}

    discord_cfg = raw_config.get("discord", {})
    manager_cfg = raw_config.get("manager", {})
    nodes = _validate_nodes(raw_config.get("nodes", []))

    shard_count = int(discord_cfg.get("shard_count", 1))
    if shard_count <= 0:
        raise ValueError("discord.shard_count must be greater than zero")

    failover_rate = float(manager_cfg.get("failover_rate_seconds", 0.25))
    if failover_rate <= 0:
        raise ValueError("manager.failover_rate_seconds must be greater than zero")

    failover_limit = int(manager_cfg.get("failover_limit", 1))
    if failover_limit <= 0:
        raise ValueError("manager.failover_limit must be greater than zero")

    handshake_timeout = float(manager_cfg.get("handshake_timeout_seconds", 10.0))
    if handshake_timeout <= 0:
        raise ValueError("manager.handshake_timeout_seconds must be greater than zero")

    app_config = AppConfig(
        discord=DiscordConfig(
            token=str(discord_cfg.get("token", "")),
            shard_count=shard_count,
        ),
        nodes=nodes,
        manager=ManagerConfig(
            default_region=str(manager_cfg.get("default_region", "us")).strip().lower() or "us",
            failover_rate_seconds=failover_rate,
            failover_limit=failover_limit,
            resume_offset_ms=max(0, int(manager_cfg.get("resume_offset_ms", 2000))),
            handshake_timeout_seconds=handshake_timeout,
            history_size=max(1, int(manager_cfg.get("history_size", 50))),
            regions=_validate_regions(manager_cfg.get("regions")),
        ),
        logging=LoggingConfig(
            level=raw_config.get("logging", {}).get("level", "INFO"),
            log_file=raw_config.get("logging", {}).get("log_file"),
            max_bytes=int(raw_config.get("logging", {}).get("max_bytes", 1_048_576)),
            backup_count=int(raw_config.get("logging", {}).get("backup_count", 5)),
        ),
    )

    app_config._config_dir = str(config_path.parent)
    app_config.resolve_paths()

    if not app_config.discord.token:
        raise ValueError("Discord bot token must be provided in the configuration file")

    return app_config


__all__ = [
    "AppConfig",
    "DiscordConfig",
    "NodeConfig",
    "ManagerConfig",
    "LoggingConfig",
    "DEFAULT_REGIONS",
    "load_config",
]
