"""Tests for CLI argument parsing and app discovery."""

from __future__ import annotations

import argparse
import uuid
from pathlib import Path
from unittest import mock

import pytest

from pgqueue.core.app import PgQueue
from pgqueue.core.cli import (
    _parse_locator,
    _resolve_module_argument,
    build_parser,
    discover_app,
    main,
    sweep_command,
)
from pgqueue.core.errors import ConfigurationError, ErrorCode
from pgqueue.core.worker.sweeper import SweepStats

_APP_SOURCE = """
from pgqueue import AppConfig, PgQueue, PostgresConfig

{name} = PgQueue(
    AppConfig(store=PostgresConfig(database_url='postgresql+psycopg://u:p@localhost/db'))
)
"""


def _write_module(tmp_path: Path, *names: str) -> Path:
    path = tmp_path / f'queue_{uuid.uuid4().hex[:8]}.py'
    path.write_text(''.join(_APP_SOURCE.format(name=n) for n in names))
    return path


@pytest.mark.unit
class TestParser:
    def test_run_with_positional_locator(self) -> None:
        args = build_parser().parse_args(['run', 'myproject.queue:app', '--loglevel', 'debug'])
        assert args.command == 'run'
        assert args.module_pos == 'myproject.queue:app'
        assert args.loglevel == 'DEBUG'

    def test_module_flag(self) -> None:
        args = build_parser().parse_args(['sweep', '-m', 'myproject.queue:app'])
        assert args.module == 'myproject.queue:app'
        assert args.loglevel == 'INFO'

    @pytest.mark.parametrize('command', ['resolve', 'init-db'])
    def test_other_commands(self, command: str) -> None:
        assert build_parser().parse_args([command, 'x:app']).command == command

    def test_bad_loglevel_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(['run', 'x:app', '--loglevel', 'chatty'])

    def test_missing_module_argument(self) -> None:
        args = argparse.Namespace(module=None, module_pos=None)
        with pytest.raises(ConfigurationError) as exc_info:
            _resolve_module_argument(args)
        assert exc_info.value.code == ErrorCode.CLI_INVALID_ARGS

    def test_main_without_command_exits(self) -> None:
        with mock.patch('sys.argv', ['pgqueue']), pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 1


@pytest.mark.unit
class TestParseLocator:
    def test_with_attribute(self) -> None:
        assert _parse_locator('myproject.queue:app') == ('myproject.queue', 'app')

    def test_without_attribute(self) -> None:
        assert _parse_locator('myproject/queue.py') == ('myproject/queue.py', None)


@pytest.mark.unit
class TestDiscoverApp:
    def test_file_path_with_attribute(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, 'queue_app')

        app, name = discover_app(f'{path}:queue_app')

        assert isinstance(app, PgQueue)
        assert name == 'queue_app'

    def test_auto_discovers_single_instance(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, 'app')

        _, name = discover_app(str(path))

        assert name == 'app'

    def test_ambiguous_module_rejected(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, 'first', 'second')

        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(str(path))

        assert exc_info.value.code == ErrorCode.APP_INVALID_LOCATOR
        assert 'found 2' in exc_info.value.message

    def test_attribute_of_wrong_type(self, tmp_path: Path) -> None:
        path = _write_module(tmp_path, 'app')

        with pytest.raises(ConfigurationError) as exc_info:
            discover_app(f'{path}:PgQueue')

        assert exc_info.value.code == ErrorCode.APP_INVALID_LOCATOR

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match='module file not found'):
            discover_app(str(tmp_path / 'nope.py'))

    def test_missing_dotted_module(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            discover_app('definitely_not_a_module_1234:app')
        assert exc_info.value.code == ErrorCode.APP_INVALID_LOCATOR


@pytest.mark.unit
class TestSweepCommand:
    def _run(self, submitted: int) -> mock.MagicMock:
        app = mock.MagicMock()
        app.get_sweeper.return_value.process_scheduled_jobs = mock.AsyncMock(
            return_value=SweepStats(claimed=submitted, submitted=submitted),
        )
        scheduler = mock.MagicMock()
        scheduler.start = mock.AsyncMock()
        scheduler.stop = mock.AsyncMock()
        scheduler.drain_in_flight = mock.AsyncMock(return_value=SweepStats(settled=submitted))

        with (
            mock.patch('pgqueue.core.cli._load_app', return_value=app),
            mock.patch('pgqueue.core.cli.Scheduler', return_value=scheduler),
        ):
            sweep_command(argparse.Namespace())
        return scheduler

    def test_waits_for_submitted_requests_before_exit(self) -> None:
        scheduler = self._run(submitted=2)

        scheduler.drain_in_flight.assert_awaited_once_with()
        scheduler.stop.assert_awaited_once()

    def test_no_drain_without_http_jobs(self) -> None:
        scheduler = self._run(submitted=0)

        scheduler.drain_in_flight.assert_not_awaited()
        scheduler.stop.assert_awaited_once()
