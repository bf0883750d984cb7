#!/usr/bin/env python3
"""
Tests for configuration loading and validation
"""

import json

import pytest

from config_manager import ConfigManager, ConfigurationError, example_config_text


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('PORTMAP_LOG_LEVEL', 'PORTMAP_LOG_FILE', 'PORTMAP_STATUS_PORT', 'PORTMAP_DIAL_TIMEOUT'):
        monkeypatch.delenv(name, raising=False)


def write_json(tmp_path, data, name='config.json'):
    path = tmp_path / name
    path.write_text(json.dumps(data))
    return str(path)


def test_load_bare_forward_array(tmp_path):
    path = write_json(tmp_path, [
        {"enable": True, "name": "mysql", "local": 33306, "remote": "tcp://172.27.205.246:3306"},
        {"name": "ssh", "local": 2222, "remote": "tcp://172.27.205.246:22"},
    ])

    config = ConfigManager().load_config(path)

    assert [forward.name for forward in config.forwards] == ['mysql', 'ssh']
    assert config.forwards[0].enable is True
    assert config.forwards[1].enable is False
    assert [forward.name for forward in config.enabled_forwards()] == ['mysql']
    assert config.logging.level == 'WARNING'
    assert config.monitoring.enabled is False


def test_load_yaml_document_with_sections(tmp_path):
    path = tmp_path / 'portmap.yaml'
    path.write_text(
        "forwards:\n"
        "  - {enable: true, name: dns, local: 5353, remote: 'udp://10.0.0.1:53'}\n"
        "bridge:\n"
        "  dial_timeout: 2.5\n"
        "  lookup_retry_count: 3\n"
        "logging:\n"
        "  level: debug\n"
        "  file:\n"
        "    enabled: true\n"
        "    path: /tmp/portmap-test.log\n"
        "  components:\n"
        "    traffic: INFO\n"
        "monitoring:\n"
        "  enabled: true\n"
        "  port: 9191\n"
    )

    config = ConfigManager().load_config(str(path))

    assert config.forwards[0].remote == 'udp://10.0.0.1:53'
    assert config.bridge.dial_timeout == 2.5
    assert config.bridge.lookup_retry_count == 3
    assert config.bridge.lookup_retry_delay == 0.5
    assert config.logging.file.enabled is True
    assert config.logging.file.path == '/tmp/portmap-test.log'
    assert config.logging.console.enabled is True
    assert config.logging.components == {'traffic': 'INFO'}
    assert config.monitoring.port == 9191


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match='not found'):
        ConfigManager().load_config(str(tmp_path / 'absent.json'))


def test_malformed_json(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text('[{"name": "mysql",')
    with pytest.raises(ConfigurationError, match='Invalid JSON'):
        ConfigManager().load_config(str(path))


def test_malformed_yaml(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text('forwards: [unclosed\n')
    with pytest.raises(ConfigurationError, match='Invalid YAML'):
        ConfigManager().load_config(str(path))


def test_wrong_top_level_type(tmp_path):
    path = write_json(tmp_path, "just a string")
    with pytest.raises(ConfigurationError):
        ConfigManager().load_config(path)


def test_validation_collects_every_error(tmp_path):
    path = write_json(tmp_path, [
        {"enable": True, "name": "", "local": 33306, "remote": "tcp://h:1"},
        {"enable": "yes", "name": "bad-enable", "local": 1, "remote": "tcp://h:1"},
        {"enable": True, "name": "bad-port", "local": 70000, "remote": "tcp://h:1"},
        {"enable": True, "name": "bad-scheme", "local": 1, "remote": "http://h:80"},
    ])

    with pytest.raises(ConfigurationError) as excinfo:
        ConfigManager().load_config(path)

    message = str(excinfo.value)
    assert 'name must be a non-empty string' in message
    assert "Forward 'bad-enable': enable must be true or false" in message
    assert "Forward 'bad-port': invalid local port 70000" in message
    assert 'unsupported scheme' in message


def test_disabled_placeholders_are_not_validated(tmp_path):
    path = write_json(tmp_path, [
        {"enable": True, "name": "mysql", "local": 33306, "remote": "tcp://10.0.0.5:3306"},
        {"enable": False, "name": "x", "local": 1, "remote": "junk"},
        {"enable": False, "name": "", "local": "later", "remote": None},
        {"name": "unset", "local": 99999},
    ])

    config = ConfigManager().load_config(path)

    assert len(config.forwards) == 4
    assert [forward.name for forward in config.enabled_forwards()] == ['mysql']


def test_components_must_be_a_mapping(tmp_path):
    path = write_json(tmp_path, {"forwards": [], "logging": {"components": ["bridge"]}})
    with pytest.raises(ConfigurationError, match='Logging components must map'):
        ConfigManager().load_config(path)


def test_invalid_sections(tmp_path):
    path = write_json(tmp_path, {
        "forwards": [],
        "logging": {"level": "LOUD"},
        "bridge": {"lookup_retry_count": 0},
    })
    with pytest.raises(ConfigurationError) as excinfo:
        ConfigManager().load_config(path)
    assert 'Invalid log level: LOUD' in str(excinfo.value)
    assert 'lookup_retry_count' in str(excinfo.value)


def test_environment_overrides(tmp_path, monkeypatch):
    path = write_json(tmp_path, [])
    monkeypatch.setenv('PORTMAP_LOG_LEVEL', 'INFO')
    monkeypatch.setenv('PORTMAP_STATUS_PORT', '9300')
    monkeypatch.setenv('PORTMAP_DIAL_TIMEOUT', '1.5')

    config = ConfigManager().load_config(path)

    assert config.logging.level == 'INFO'
    assert config.monitoring.enabled is True
    assert config.monitoring.port == 9300
    assert config.bridge.dial_timeout == 1.5


def test_invalid_environment_override(tmp_path, monkeypatch):
    path = write_json(tmp_path, [])
    monkeypatch.setenv('PORTMAP_STATUS_PORT', 'ninety')
    with pytest.raises(ConfigurationError, match='PORTMAP_STATUS_PORT'):
        ConfigManager().load_config(path)


def test_search_default_locations(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv('HOME', str(tmp_path))
    with pytest.raises(ConfigurationError, match='not found'):
        ConfigManager().load_config()

    write_json(tmp_path, [], name='portmap.json')
    manager = ConfigManager()
    manager.load_config()
    assert manager.config_file == 'portmap.json'


def test_example_config_is_valid(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(example_config_text())

    config = ConfigManager().load_config(str(path))

    assert len(config.forwards) == 4
    assert [forward.name for forward in config.enabled_forwards()] == ['mysql', 'postgres', 'ssh']
