"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from avanodectl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.node_root == Path("/home/avalanche/.avalanchego")
    assert config.binary_path == Path("/home/avalanche/avalanchego/avalanchego")
    assert config.service_user == "avalanche"
    assert config.service.unit_dir == Path("/etc/systemd/system")
    assert config.backups.root == Path("/home/avalanche/.avalanchego/backups")
    assert config.backups.keep == 5
    assert config.release.repository == "ava-labs/avalanchego"
    assert config.preflight.required_commands == ("systemctl", "tar")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "avanodectl.yml"
    cfg.write_text(
        f"node_root: {tmp_path / 'node'}\n"
        "service_group: null\n"
        "service:\n"
        "  stop_timeout: 600\n"
        "release:\n"
        "  arch: arm64\n"
        "backups:\n"
        "  keep: 2\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.node_root == tmp_path / "node"
    assert config.service_group is None
    assert config.service.stop_timeout == 600.0
    assert config.release.arch == "arm64"
    assert config.backups.keep == 2
    assert config.backups.root == tmp_path / "node" / "backups"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  keep: 2\n", encoding="utf-8")
    env = {
        "AVANODECTL_NODE_ROOT": str(tmp_path / "node"),
        "AVANODECTL_LOCK_TIMEOUT": "45",
        "AVANODECTL_BACKUPS__KEEP": "9",
        "AVANODECTL_BACKUPS__ROOT": str(tmp_path / "bk"),
        "AVANODECTL_PREFLIGHT__ENABLED": "false",
        "OTHER_VARIABLE": "ignored",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.node_root == tmp_path / "node"
    assert config.lock_timeout == 45.0
    assert config.backups.keep == 9
    assert config.backups.root == tmp_path / "bk"
    assert config.preflight.enabled is False


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("binary_name: avalanchego-test\n", encoding="utf-8")

    config = load_config(env={"AVANODECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.binary_name == "avalanchego-test"


def test_overrides_win_over_everything(tmp_path: Path) -> None:
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"AVANODECTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 3},
    )

    assert config.lock_timeout == 3.0


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    payload = config.to_dict()

    assert payload["node_root"] == "/home/avalanche/.avalanchego"
    assert payload["backups"]["keep"] == 5  # type: ignore[index]


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text("backups:\n  compression: gzip\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Unknown backups configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("release:\n  arch: mips\n", "Unsupported release architecture"),
        ("backups:\n  keep: 0\n", "backups.keep"),
        ("release:\n  attempts: 0\n", "release.attempts"),
        ("lock_timeout: -1\n", "lock_timeout"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str, message: str) -> None:
    cfg = tmp_path / "config.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})
