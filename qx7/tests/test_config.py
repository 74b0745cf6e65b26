# qx7/tests/test_config.py
import pytest
from pydantic import ValidationError

from qx7.config import ReloadableSettings, Settings, _load_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("QX7_CONFIG_PATH", "QX7_PORT", "PORT", "QX7_CORS_ORIGINS", "QX7_ANALYTICS_TIMEOUT_S"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = _load_settings()
    assert s.base_path == "/api/v1/estore"
    assert s.port == 3000
    assert s.etag_max_age_s == 3600
    assert s.config_origin == "defaults"


def test_settings_are_frozen_and_strict():
    s = Settings()
    with pytest.raises(ValidationError):
        s.port = 1
    with pytest.raises(ValidationError):
        Settings(unknown_knob=True)


def test_yaml_overlay_then_env(tmp_path, monkeypatch):
    path = tmp_path / "qx7.yaml"
    path.write_text(
        "port: 8080\nanalytics_enabled: false\ncors_origins:\n  - https://a.example\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("QX7_CONFIG_PATH", str(path))
    monkeypatch.setenv("QX7_PORT", "9090")

    s = _load_settings()
    assert s.config_origin == "yaml"
    assert s.port == 9090
    assert s.analytics_enabled is False
    assert s.cors_origins == ("https://a.example",)


def test_env_bounds_are_enforced(monkeypatch):
    monkeypatch.setenv("QX7_PORT", "70000")
    monkeypatch.setenv("QX7_ANALYTICS_TIMEOUT_S", "0.01")
    s = _load_settings()
    assert s.port == 3000
    assert s.analytics_timeout_s == 5.0


def test_env_csv_origins(monkeypatch):
    monkeypatch.setenv("QX7_CORS_ORIGINS", "https://a.example, https://b.example,")
    assert _load_settings().cors_origins == ("https://a.example", "https://b.example")


def test_config_hash_tracks_content():
    assert Settings().config_hash() == Settings().config_hash()
    assert Settings().config_hash() != Settings(port=3001).config_hash()


def test_reloadable_set_ignores_unknown_keys():
    holder = ReloadableSettings(Settings())
    updated = holder.set(port=4000, nonsense=1)
    assert updated.port == 4000
    assert holder.get() is updated
