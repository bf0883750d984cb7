#!/usr/bin/env python3
"""
Tests for the command line entry point and application lifecycle
"""

import asyncio
import json

import pytest

from app import PortmapApplication
from cli_utils import create_argument_parser
from config_manager import ConfigurationError
from main import main
from safe_logger import setup_safe_logging
from testing_utils import EchoServer, wait_until


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('PORTMAP_LOG_LEVEL', 'PORTMAP_LOG_FILE', 'PORTMAP_STATUS_PORT', 'PORTMAP_DIAL_TIMEOUT'):
        monkeypatch.delenv(name, raising=False)
    yield
    # Handlers installed by main() point at this test's captured stdout
    setup_safe_logging(enabled=False)


def write_config(tmp_path, forwards, name='config.json'):
    path = tmp_path / name
    path.write_text(json.dumps(forwards))
    return str(path)


def test_start_arguments():
    args = create_argument_parser().parse_args(
        ['start', '-c', 'forwards.yaml', '-d', '-V', '-p', '-n', 'mysql', '--testfor', '3']
    )
    assert args.command == 'start'
    assert args.config == 'forwards.yaml'
    assert args.debug and args.verbose and args.plain
    assert args.name == 'mysql'
    assert args.testfor == 3


def test_start_defaults():
    args = create_argument_parser().parse_args(['start'])
    assert args.config is None
    assert not args.verbose
    assert args.name is None
    assert args.testfor is None


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert 'usage: portmap' in capsys.readouterr().out


def test_example_prints_loadable_json(capsys):
    assert main(['example']) == 0
    forwards = json.loads(capsys.readouterr().out)
    assert forwards[0]['name'] == 'mysql'
    assert all({'enable', 'name', 'local', 'remote'} <= set(entry) for entry in forwards)


def test_validate_good_config(tmp_path, capsys):
    path = write_config(tmp_path, [
        {"enable": True, "name": "mysql", "local": 33306, "remote": "tcp://10.0.0.5:3306"},
        {"enable": False, "name": "dns", "local": 5353, "remote": "udp://10.0.0.5:53"},
    ])
    assert main(['validate', '-c', path]) == 0
    out = capsys.readouterr().out
    assert 'Configuration is valid' in out
    assert '1 enabled, 1 disabled' in out


def test_validate_duplicate_names(tmp_path, capsys):
    path = write_config(tmp_path, [
        {"enable": True, "name": "mysql", "local": 1, "remote": "tcp://10.0.0.5:3306"},
        {"enable": True, "name": "mysql", "local": 2, "remote": "tcp://10.0.0.5:3307"},
    ])
    assert main(['validate', '-c', path]) == 1
    assert 'config element name mysql already exists' in capsys.readouterr().out


def test_start_with_bad_config_exits_with_example(tmp_path, capsys):
    path = tmp_path / 'config.json'
    path.write_text('not json')

    assert main(['start', '-c', str(path)]) == 1
    err = capsys.readouterr().err
    assert 'Configuration error' in err
    assert 'Example configuration' in err


def test_start_runs_for_testfor_seconds(tmp_path, capsys):
    path = write_config(tmp_path, [
        {"enable": True, "name": "idle", "local": 0, "remote": "tcp://127.0.0.1:9"},
    ])
    assert main(['start', '-c', path, '--testfor', '1']) == 0
    assert 'idle' in capsys.readouterr().out


def test_application_relays_until_shutdown(tmp_path, capsys):
    async def scenario():
        server = await EchoServer().start()
        path = write_config(tmp_path, [
            {"enable": True, "name": "echo", "local": 0, "remote": f"tcp://127.0.0.1:{server.port}"},
        ])
        app = PortmapApplication(path)
        task = asyncio.create_task(app.start())
        try:
            assert await wait_until(
                lambda: app.registry is not None and app.registry.bridges['echo'].listener.running
            )
            port = app.registry.bridges['echo'].listener.local_port

            reader, writer = await asyncio.open_connection('127.0.0.1', port)
            writer.write(b'through the app')
            await writer.drain()
            reply = await asyncio.wait_for(reader.readexactly(15), timeout=5)
            writer.close()
        finally:
            app.request_shutdown()
            await task
            await server.stop()
        return reply, app

    reply, app = asyncio.run(scenario())
    assert reply == b'through the app'
    assert not app.running
    assert 'echo' in capsys.readouterr().out


def test_application_rejects_duplicates_before_listening(tmp_path):
    path = write_config(tmp_path, [
        {"enable": True, "name": "dup", "local": 0, "remote": "tcp://127.0.0.1:9"},
        {"enable": True, "name": "dup", "local": 0, "remote": "tcp://127.0.0.1:10"},
    ])
    app = PortmapApplication(path)

    with pytest.raises(ConfigurationError):
        asyncio.run(app.start())
    assert app.registry is None


def test_start_with_malformed_logging_section_exits_cleanly(tmp_path, capsys):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({"forwards": [], "logging": {"components": ["bridge"]}}))

    assert main(['start', '-c', str(path)]) == 1
    err = capsys.readouterr().err
    assert 'Logging components must map' in err
    assert 'Example configuration' in err
