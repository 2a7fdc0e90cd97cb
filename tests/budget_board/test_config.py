"""Tests for configuration loading."""

import json
from pathlib import Path

import pytest

from budget_board.config import BoardConfig, load_config, load_overrides


def test_defaults():
    config = load_config(env={})
    assert config.data_dir == Path.home() / ".budget-board"
    assert config.gateway_url == "http://localhost:8080"
    assert config.cache_ttl == 300
    assert config.allowed_hosts == [".api.accelo.com"]
    assert config.store_dir == config.data_dir / "store"


def test_environment_values(tmp_path):
    env = {
        "BUDGET_BOARD_DATA_DIR": str(tmp_path),
        "BUDGET_BOARD_GATEWAY_URL": "http://gateway:9000/",
        "BUDGET_BOARD_REQUEST_DELAY": "0.5",
        "BUDGET_BOARD_ALLOWED_HOSTS": ".api.accelo.com, localhost",
        "BUDGET_BOARD_PERSIST_SETTINGS": "true",
        "BUDGET_BOARD_PORT": "",
    }
    config = load_config(env=env)
    assert config.data_dir == tmp_path
    assert config.gateway_url == "http://gateway:9000"
    assert config.request_delay == 0.5
    assert config.allowed_hosts == [".api.accelo.com", "localhost"]
    assert config.persist_settings is True
    assert config.port == 8080


def test_explicit_overrides_win(tmp_path):
    env = {"BUDGET_BOARD_DATA_DIR": "/somewhere/else"}
    config = load_config(env=env, data_dir=tmp_path, gateway_url=None)
    assert config.data_dir == tmp_path
    assert config.gateway_url == "http://localhost:8080"


@pytest.mark.parametrize(
    "env",
    [{"BUDGET_BOARD_PORT": "0"}, {"BUDGET_BOARD_CACHE_TTL": "-1"}, {"BUDGET_BOARD_REQUEST_DELAY": "soon"}],
)
def test_invalid_values(env):
    with pytest.raises(ValueError, match="Invalid configuration"):
        load_config(env=env)


def test_load_overrides(tmp_path):
    path = tmp_path / "overrides.json"
    path.write_text(json.dumps({"by_id": {"101": 60}, "by_title": {"website": 80}}))

    overrides = load_overrides(BoardConfig(data_dir=tmp_path, overrides_path=path))
    assert overrides.lookup(101, "anything") == 60
    assert overrides.lookup(5, "Website Redesign") == 80


def test_no_overrides_configured(tmp_path):
    assert load_overrides(BoardConfig(data_dir=tmp_path)).lookup(101, "x") is None
