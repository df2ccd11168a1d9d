import importlib

import pytest

from drivekenya_rec import config


@pytest.fixture(autouse=True)
def restore_config(monkeypatch):
    yield
    monkeypatch.undo()
    importlib.reload(config)


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("DRIVEKENYA_HTTP_TIMEOUT", "2.5")
    monkeypatch.setenv("DRIVEKENYA_FETCH_TIMEOUT", "-1")  # should clamp to min
    monkeypatch.setenv("DRIVEKENYA_HTTP_RETRIES", "0")  # min clamp
    monkeypatch.setenv("DRIVEKENYA_API_URL", "https://api.drivekenya.test/api")

    cfg = importlib.reload(config)

    assert cfg.HTTP_TIMEOUT == 2.5
    assert cfg.FETCH_TIMEOUT == 0.0
    assert cfg.MAX_HTTP_RETRIES == 1
    assert cfg.API_BASE_URL == "https://api.drivekenya.test/api"


def test_db_path_respects_env(monkeypatch, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("DRIVEKENYA_DB", str(db_path))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("DRIVEKENYA_HTTP_TIMEOUT", "not-a-float")
    monkeypatch.setenv("DRIVEKENYA_FETCH_TIMEOUT", "oops")
    monkeypatch.setenv("DRIVEKENYA_HTTP_RETRIES", "bad-int")

    cfg = importlib.reload(config)

    assert cfg.HTTP_TIMEOUT == 10.0
    assert cfg.FETCH_TIMEOUT == 15.0
    assert cfg.MAX_HTTP_RETRIES == 3


def test_blend_weights_sum_to_one():
    assert abs(sum(config.BLEND_WEIGHTS.values()) - 1.0) < 1e-9
    assert set(config.COMPONENT_ORDER) == set(config.BLEND_WEIGHTS)
