"""Unit tests for configuration management."""
from pathlib import Path

from meshcall.utils.config import Config, MeshConfig, Settings, load_config, save_config

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "configs" / "default.yaml"


def test_load_default_config():
    """Test loading the shipped default configuration."""
    config = load_config(DEFAULT_CONFIG)

    assert isinstance(config, Config)
    assert config.server.port == 3001
    assert config.mesh.connect_timeout == 30.0
    assert config.media.source is None


def test_load_config_without_path():
    config = load_config()

    assert config.server.health_path == "/"
    assert config.mesh.connect_timeout is None


def test_missing_file_falls_back_to_defaults(tmp_path):
    config = load_config(tmp_path / "nope.yaml")

    assert config == Config()


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert load_config(path) == Config()


def test_ice_servers_from_yaml():
    """TURN entries keep their credentials."""
    config = load_config(DEFAULT_CONFIG)

    turn = [s for s in config.mesh.ice_servers if str(s.urls).startswith("turn:")]
    assert turn
    assert turn[0].username == "openrelayproject"
    assert turn[0].credential == "openrelayproject"


def test_default_ice_servers_include_stun_and_turn():
    urls = [s.urls for s in MeshConfig().ice_servers]

    assert any(u.startswith("stun:") for u in urls)
    assert any(u.startswith("turn:") for u in urls)


def test_save_and_reload(tmp_path):
    config = Config()
    config.server.port = 4444
    config.mesh.connect_timeout = 5.0
    path = tmp_path / "saved.yaml"

    save_config(config, path)
    reloaded = load_config(path)

    assert reloaded.server.port == 4444
    assert reloaded.mesh.connect_timeout == 5.0
    assert reloaded.mesh.ice_servers == config.mesh.ice_servers


def test_settings_read_prefixed_env(monkeypatch):
    monkeypatch.setenv("MESHCALL_PORT", "4000")
    monkeypatch.setenv("MESHCALL_SIGNALING_URL", "ws://relay.example:4000")
    monkeypatch.setenv("MESHCALL_LOG_LEVEL", "debug")

    settings = Settings(_env_file=None)

    assert settings.port == 4000
    assert settings.signaling_url == "ws://relay.example:4000"
    assert settings.log_level == "debug"
