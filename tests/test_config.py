from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import yaml

from voicelink.config import DEFAULT_REGIONS, load_config


def _write_config(tmp_path: Path, overrides: Optional[Dict[str, Any]] = None) -> Path:
    config_content: Dict[str, Any] = {
        "discord": {"token": "token-value", "shard_count": 2},
        "nodes": [
            {"host": "node-eu", "port": 2333, "region": "EU", "password": "secret"},
            {"host": "node-us", "region": "us"},
        ],
        "manager": {"failover_limit": 2},
        "logging": {"level": "DEBUG", "log_file": "logs/voicelink.log"},
    }
    config_content.update(overrides or {})
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump(config_content), encoding="utf-8")
    return config_path


def test_loads_nodes_and_manager_settings(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path))

    assert config.discord.token == "token-value"
    assert config.discord.shard_count == 2
    assert [node.host for node in config.nodes] == ["node-eu", "node-us"]
    assert config.nodes[0].region == "eu"
    assert config.nodes[0].password == "secret"
    assert config.nodes[1].port == 80
    assert config.nodes[1].password == "youshallnotpass"
    assert config.manager.failover_limit == 2
    assert config.manager.failover_rate_seconds == 0.25
    assert config.manager.resume_offset_ms == 2000
    assert config.manager.regions == DEFAULT_REGIONS


def test_relative_log_file_resolves_against_config_dir(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path))

    assert config.logging.log_file == str(tmp_path / "logs" / "voicelink.log")


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_missing_token_raises(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, {"discord": {}})

    with pytest.raises(ValueError, match="token"):
        load_config(config_path)


def test_at_least_one_node_is_required(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, {"nodes": []})

    with pytest.raises(ValueError, match="At least one voice node"):
        load_config(config_path)


def test_nodes_must_be_a_sequence(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, {"nodes": {"host": "node-eu"}})

    with pytest.raises(TypeError):
        load_config(config_path)


def test_duplicate_hosts_are_rejected(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, {"nodes": [{"host": "a"}, {"host": "a", "port": 2333}]})

    with pytest.raises(ValueError, match="more than once"):
        load_config(config_path)


def test_invalid_port_is_rejected(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, {"nodes": [{"host": "a", "port": 70000}]})

    with pytest.raises(ValueError, match="invalid port"):
        load_config(config_path)


def test_region_prefixes_must_be_a_list(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, {"manager": {"regions": {"eu": "frankfurt"}}})

    with pytest.raises(TypeError):
        load_config(config_path)


def test_region_prefixes_are_normalized(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path, {"manager": {"regions": {"EU": [" Frankfurt ", "AMSTERDAM"]}}}
    )

    config = load_config(config_path)

    assert config.manager.regions == {"eu": ["frankfurt", "amsterdam"]}


def test_failover_limit_must_be_positive(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, {"manager": {"failover_limit": 0}})

    with pytest.raises(ValueError, match="failover_limit"):
        load_config(config_path)
