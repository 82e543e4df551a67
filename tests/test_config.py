from pathlib import Path

from keyring.errors import KeyringError

from dltrack import config as c


def test_defaults_written_and_merged(tmp_path):
    cfg = c.get_config()
    assert Path(c.config_path()).exists()
    assert cfg["api"]["base_url"] == "https://api.deadlock-api.com"
    assert cfg["ingest"]["batch_size"] == 100
    assert cfg["database"]["path"].endswith("dltrack.db")


def test_user_values_survive_merge():
    cfg = c.get_config()
    cfg["ingest"]["limit"] = 42
    del cfg["backoff"]
    c.save_config(cfg)
    again = c.get_config()
    assert again["ingest"]["limit"] == 42
    assert again["backoff"]["max_attempts"] == 4


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("DEADLOCK_API_BASE", "http://localhost:3000")
    monkeypatch.setenv("DLTRACK_DB_PATH", str(tmp_path / "x.db"))
    cfg = c.get_config()
    assert cfg["api"]["base_url"] == "http://localhost:3000"
    assert cfg["database"]["path"] == str(tmp_path / "x.db")


def test_api_key_keyring_then_env(isolated_env, monkeypatch):
    assert c.get_api_key("api") is None
    monkeypatch.setenv("DEADLOCK_API_KEY", "from-env")
    assert c.get_api_key("api") == "from-env"
    c.set_api_key("from-keyring", "api")
    assert c.get_api_key("api") == "from-keyring"
    assert c.get_api_key("steam") is None


def test_broken_keyring_falls_back_to_env(monkeypatch):
    def broken(service, user):
        raise KeyringError("no backend")

    monkeypatch.setattr("dltrack.config.keyring.get_password", broken)
    monkeypatch.setenv("STEAM_WEB_API_KEY", "s")
    assert c.get_api_key("steam") == "s"
