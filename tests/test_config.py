"""Tests for configuration loading."""
import pytest

from core.config import CONFIG_PATH_ENV, Config, load_config


def _write(tmp_path, text):
    path = tmp_path / "config.toml"
    path.write_text(text, encoding='utf-8')
    return path


def test_load_config_from_toml(tmp_path):
    path = _write(tmp_path, """
[admin]
username = "alice"

[notifications]
interval_seconds = 120
public_base_url = "https://subm.example.com/"

[smtp]
host = "smtp.example.com"
port = 587
user = "bot@example.com"
password = "secret"

[server]
port = 8080
api_token = "t0ken"
""")

    cfg = load_config(str(path))

    assert cfg.admin.username == "alice"
    assert cfg.notifications.interval_seconds == 120
    assert cfg.notifications.public_base_url == "https://subm.example.com"
    assert cfg.smtp.configured
    assert cfg.smtp.from_address == "bot@example.com"
    assert cfg.server.port == 8080
    assert cfg.server.api_token == "t0ken"


def test_defaults():
    cfg = Config(admin={'username': 'admin'})

    assert cfg.database.path == "data/subm.db"
    assert cfg.notifications.interval_seconds == 600
    assert cfg.notifications.email_subject == "续订提醒通知"
    assert cfg.exchange_rate.poll_interval_seconds == 300
    assert cfg.exchange_rate.default_timezone == "Asia/Shanghai"
    assert cfg.server.port == 3001
    assert not cfg.smtp.configured


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = _write(tmp_path, '[admin]\nusername = "bob"\n')
    monkeypatch.setenv(CONFIG_PATH_ENV, str(path))

    assert load_config().admin.username == "bob"


def test_missing_file_exits(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        load_config(str(tmp_path / "nope.toml"))
    assert exc_info.value.code == 1


@pytest.mark.parametrize("text", [
    '[admin]\nusername = "  "\n',
    '[notifications]\ninterval_seconds = 60\n',
    '[admin]\nusername = "a"\n[notifications]\ninterval_seconds = 0\n',
    '[admin]\nusername = "a"\n[exchange_rate]\ndefault_timezone = "Mars/Olympus"\n',
    '[admin]\nusername = "a"\n[logging]\nlevel = "LOUD"\n',
    'not = [valid toml',
])
def test_invalid_config_exits(tmp_path, text):
    with pytest.raises(SystemExit) as exc_info:
        load_config(str(_write(tmp_path, text)))
    assert exc_info.value.code == 1
