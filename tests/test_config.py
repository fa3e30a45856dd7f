"""Tests for configuration loading, validation and hot-reload.

Covers schema validation errors, tenant overrides, the config singleton
and reload-on-change behavior.
"""

import os
from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from inbox_triage.config import (
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError


def _write(path: Path, data: dict[str, Any] | str) -> Path:
    text = data if isinstance(data, str) else yaml.dump(data, default_flow_style=False)
    path.write_text(text)
    return path


def _bump_mtime(path: Path) -> None:
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 10))


# ---------------------------------------------------------------------------
# Tests: Loading
# ---------------------------------------------------------------------------


def test_load_sample_config(config_file: Path):
    config = load_config(config_file)

    assert config.thresholds.high == 0.85
    assert config.batch.requests_per_minute == 1000
    assert "acme" in config.tenants


def test_empty_file_uses_defaults(temp_config_dir: Path):
    config = load_config(_write(temp_config_dir / "config.yaml", ""))

    assert config.batch.max_ai_limit == 10
    assert config.learning.repetition_threshold == 2
    assert config.database.path == "data/inbox_triage.db"


def test_missing_file(temp_config_dir: Path):
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(temp_config_dir / "nope.yaml")


def test_invalid_yaml(temp_config_dir: Path):
    with pytest.raises(ConfigLoadError):
        load_config(_write(temp_config_dir / "config.yaml", "thresholds: [unclosed"))


def test_non_mapping_yaml(temp_config_dir: Path):
    with pytest.raises(ConfigLoadError, match="mapping"):
        load_config(_write(temp_config_dir / "config.yaml", "- just\n- a list\n"))


# ---------------------------------------------------------------------------
# Tests: Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "data,fragment",
    [
        ({"thresholds": {"high": 0.4, "low": 0.6}}, "must not exceed"),
        ({"thresholds": {"high": 1.5}}, "thresholds.high"),
        ({"batch": {"requests_per_minute": 5000}}, "batch.requests_per_minute"),
        ({"unknown_section": {}}, "Unknown field 'unknown_section'"),
        ({"tenants": {"acme": {"classifier": {}}}}, "Unknown field"),
        ({"database": {"path": "../escape.db"}}, "path traversal"),
        ({"schema_version": 99}, "newer than supported"),
    ],
)
def test_validation_errors(temp_config_dir: Path, data: dict[str, Any], fragment: str):
    path = _write(temp_config_dir / "config.yaml", data)
    with pytest.raises(ConfigValidationError, match=fragment):
        load_config(path)


def test_vip_domains_normalized():
    config = AppConfig(business={"vip_domains": ["@BigCo.com ", "partner.io"]})
    assert config.business.vip_domains == ["bigco.com", "partner.io"]


def test_blank_tenant_id_rejected():
    with pytest.raises(ValidationError):
        AppConfig(tenants={"  ": {}})


# ---------------------------------------------------------------------------
# Tests: Tenant overrides
# ---------------------------------------------------------------------------


def test_tenant_override_replaces_section(sample_config_dict: dict[str, Any]):
    sample_config_dict["tenants"] = {
        "acme": {"thresholds": {"high": 0.9, "low": 0.5}, "business": {"is_hiring": True}}
    }
    config = AppConfig(**sample_config_dict)

    acme = config.for_tenant("acme")
    other = config.for_tenant("globex")

    assert acme.thresholds.high == 0.9
    assert acme.business.is_hiring is True
    assert acme.learning == config.learning
    assert other.thresholds.high == 0.85
    assert other.business.is_hiring is False


def test_tenant_can_disable_patterns(sample_config_dict: dict[str, Any]):
    sample_config_dict["tenants"] = {"acme": {"patterns": {"enabled": False}}}
    config = AppConfig(**sample_config_dict)

    assert config.patterns.enabled is True
    assert config.for_tenant("acme").patterns.enabled is False
    assert config.for_tenant("acme").patterns.use_sender_history is True
    assert config.for_tenant("globex").patterns.enabled is True


# ---------------------------------------------------------------------------
# Tests: Singleton and hot-reload
# ---------------------------------------------------------------------------


def test_get_config_is_cached(set_config_env: None):
    assert get_config() is get_config()


def test_reload_without_change(set_config_env: None):
    get_config()
    assert reload_config_if_changed() is False


def test_reload_picks_up_changes(set_config_env: None, config_file: Path):
    original = get_config()
    data = yaml.safe_load(config_file.read_text())
    data["thresholds"]["high"] = 0.9
    _write(config_file, data)
    _bump_mtime(config_file)

    assert reload_config_if_changed() is True
    assert get_config() is not original
    assert get_config().thresholds.high == 0.9


def test_invalid_reload_keeps_previous_config(set_config_env: None, config_file: Path):
    original = get_config()
    _write(config_file, {"thresholds": {"high": 0.2, "low": 0.9}})
    _bump_mtime(config_file)

    assert reload_config_if_changed() is False
    assert get_config() is original


def test_reload_before_first_load():
    assert reload_config_if_changed() is False


# ---------------------------------------------------------------------------
# Tests: validate_config_file
# ---------------------------------------------------------------------------


def test_validate_config_file_valid(config_file: Path):
    ok, message = validate_config_file(config_file)
    assert ok is True
    assert "1 tenant overrides" in message


def test_validate_config_file_invalid(temp_config_dir: Path):
    path = _write(temp_config_dir / "config.yaml", {"batch": {"max_limit": 0}})
    ok, message = validate_config_file(path)
    assert ok is False
    assert message.startswith("Validation error")


def test_validate_config_file_missing(temp_config_dir: Path):
    ok, message = validate_config_file(temp_config_dir / "missing.yaml")
    assert ok is False
    assert message.startswith("Load error")
