# pgqueue/core/cli.py
"""
CLI for the pgqueue scheduler and one-shot sweeps.

The app is located with a module locator: `pgqueue run myproject.queue:app`.
The user is responsible for PYTHONPATH; the current directory is added to
sys.path for convenience.
"""

import argparse
import asyncio
import importlib
import importlib.util
import os
import signal
import sys
from collections.abc import Awaitable, Callable
from types import ModuleType
from typing import Any

from pgqueue.core.app import PgQueue
from pgqueue.core.errors import ConfigurationError, ErrorCode, PgQueueError
from pgqueue.core.logging import get_logger, setup_logging
from pgqueue.core.scheduler import Scheduler
from pgqueue.core.types.result import is_err

_LOGLEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']


def _resolve_module_argument(args: argparse.Namespace) -> str:
    """Return module path from --module or positional, error if missing."""
    module_path = getattr(args, 'module', None) or getattr(args, 'module_pos', None)
    if not module_path:
        raise ConfigurationError(
            message='module path is required',
            code=ErrorCode.CLI_INVALID_ARGS,
            notes=['no --module flag or positional module argument provided'],
            help_text=(
                'provide module path in one of these formats:\n'
                '  pgqueue run myproject.queue:app  (recommended)\n'
                '  pgqueue run myproject/queue.py:app  (file path)\n'
                '  pgqueue run myproject.queue  (auto-discover app variable)'
            ),
        )
    return module_path


def _parse_locator(locator: str) -> tuple[str, str | None]:
    """
    Parse a module locator into (module_path, attribute_name).

    - "myproject.queue:app" -> ("myproject.queue", "app")
    - "myproject/queue.py" -> ("myproject/queue.py", None)
    """
    if ':' in locator:
        module_part, attr = locator.rsplit(':', 1)
        return (module_part, attr)
    return (locator, None)


def _is_file_path(path: str) -> bool:
    return path.endswith('.py') or os.path.sep in path or '/' in path


def _import_file(file_path: str) -> ModuleType:
    directory = os.path.dirname(file_path)
    if directory not in sys.path:
        sys.path.insert(0, directory)
    module_name = os.path.splitext(os.path.basename(file_path))[0]
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(
            message=f'cannot import {file_path}',
            code=ErrorCode.APP_INVALID_LOCATOR,
        )
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)
    return module


def discover_app(module_locator: str) -> tuple[PgQueue, str]:
    """
    Import the module and find the PgQueue instance.

    Returns:
        (app_instance, variable_name)
    """
    logger = get_logger('cli')

    cwd = os.getcwd()
    if cwd not in sys.path:
        sys.path.insert(0, cwd)

    module_path, attr_name = _parse_locator(module_locator)

    if _is_file_path(module_path):
        if not module_path.endswith('.py'):
            module_path += '.py'
        file_path = os.path.realpath(module_path)
        if not os.path.exists(file_path):
            raise ConfigurationError(
                message=f'module file not found: {module_path}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'resolved to {file_path}'],
            )
        module = _import_file(file_path)
    else:
        try:
            module = importlib.import_module(module_path)
        except ModuleNotFoundError as e:
            raise ConfigurationError(
                message=f'module not found: {module_path}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[str(e), f'sys.path: {sys.path[:5]}...'],
                help_text=(
                    'ensure you are running from the correct directory\n'
                    'or set PYTHONPATH to include your project root'
                ),
            ) from e

    if attr_name:
        obj = getattr(module, attr_name, None)
        if not isinstance(obj, PgQueue):
            raise ConfigurationError(
                message=f"'{attr_name}' in module '{module.__name__}' is not a PgQueue instance",
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'got {type(obj).__name__}'],
            )
        app, var_name = obj, attr_name
    else:
        instances = [
            (obj, name)
            for name, obj in vars(module).items()
            if not name.startswith('_') and isinstance(obj, PgQueue)
        ]
        if len(instances) != 1:
            found = [name for _, name in instances]
            raise ConfigurationError(
                message=f'expected one PgQueue instance in {module.__name__}, found {len(instances)}',
                code=ErrorCode.APP_INVALID_LOCATOR,
                notes=[f'candidates: {found}'] if found else [],
                help_text='specify the variable name: module.path:variable',
            )
        app, var_name = instances[0]

    logger.info(f"Discovered pgqueue app '{var_name}' from {module.__name__}")
    return app, var_name


def _load_app(args: argparse.Namespace) -> PgQueue:
    logger = get_logger('cli')
    setup_logging(args.loglevel)
    try:
        app, _var_name = discover_app(_resolve_module_argument(args))
    except PgQueueError as e:
        logger.error(str(e))
        sys.exit(1)
    except Exception as e:
        logger.error(f'Failed to discover app: {e}')
        sys.exit(1)
    return app


def _run_once(
    app: PgQueue, action: Callable[[Scheduler], Awaitable[Any]], label: str,
) -> None:
    logger = get_logger('cli')

    async def _main() -> None:
        scheduler = Scheduler(app)
        try:
            await scheduler.start()
            await action(scheduler)
        finally:
            await scheduler.stop()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info(f'{label} interrupted by user')
    except Exception as e:
        logger.error(f'{label} failed: {e}')
        sys.exit(1)


def run_command(args: argparse.Namespace) -> None:
    """Run the periodic scheduler until SIGINT/SIGTERM."""
    logger = get_logger('cli')
    app = _load_app(args)
    logger.info(f'Starting scheduler: {app.config.log_config()}')

    async def run_scheduler() -> None:
        scheduler = Scheduler(app)
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.info('Received interrupt signal, stopping scheduler...')
            scheduler.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                pass

        await scheduler.run_forever()

    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info('Scheduler interrupted by user')
    except Exception as e:
        logger.error(f'Scheduler failed: {e}', exc_info=True)
        sys.exit(1)


def sweep_command(args: argparse.Namespace) -> None:
    """One claim sweep, for cron-style deployments."""
    logger = get_logger('cli')
    app = _load_app(args)

    async def action(scheduler: Scheduler) -> None:
        stats = await app.get_sweeper().process_scheduled_jobs()
        logger.info(f'Sweep finished: {stats.summary()}')
        if stats.submitted:
            drained = await scheduler.drain_in_flight()
            if drained is not None:
                logger.info(f'Settled in-flight requests: {drained.summary()}')

    _run_once(app, action, 'Sweep')


def resolve_command(args: argparse.Namespace) -> None:
    """One resolution sweep."""
    logger = get_logger('cli')
    app = _load_app(args)

    async def action(scheduler: Scheduler) -> None:
        stats = await app.get_sweeper().process_job_results()
        logger.info(f'Resolve finished: {stats.summary()}')

    _run_once(app, action, 'Resolve')


def init_db_command(args: argparse.Namespace) -> None:
    """Create the pgqueue tables and indexes."""
    logger = get_logger('cli')
    app = _load_app(args)

    async def _main() -> None:
        try:
            result = await app.get_store().ensure_schema_initialized()
            if is_err(result):
                err = result.err_value
                raise RuntimeError(err.message) from err.exception
        finally:
            await app.close_async()

    try:
        asyncio.run(_main())
    except Exception as e:
        logger.error(f'Schema initialization failed: {e}')
        sys.exit(1)
    logger.info('Schema initialized')


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '-m',
        '--module',
        dest='module',
        help='Module path (e.g., myproject.queue:app)',
    )
    parser.add_argument(
        'module_pos',
        nargs='?',
        help='Module path (e.g., myproject.queue:app)',
    )
    parser.add_argument(
        '--loglevel',
        choices=_LOGLEVELS,
        default='INFO',
        type=str.upper,
        help='Logging level (default: INFO)',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='pgqueue',
        description='pgqueue job engine - scheduler and sweep management',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Periodic scheduler (claim sweep every tick, resolution sweeps in between)
  pgqueue run myproject.queue:app

  # One sweep each, e.g. from cron
  pgqueue sweep myproject.queue:app
  pgqueue resolve myproject.queue:app

  # Create tables
  pgqueue init-db myproject.queue:app
""",
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    _add_common_arguments(subparsers.add_parser('run', help='Run the periodic scheduler'))
    _add_common_arguments(subparsers.add_parser('sweep', help='Run one claim sweep'))
    _add_common_arguments(
        subparsers.add_parser('resolve', help='Run one resolution sweep'),
    )
    _add_common_arguments(
        subparsers.add_parser('init-db', help='Create the database schema'),
    )
    return parser


def main() -> None:
    """Main CLI entry point."""
    try:
        parser = build_parser()
        args = parser.parse_args()

        match args.command:
            case 'run':
                run_command(args)
            case 'sweep':
                sweep_command(args)
            case 'resolve':
                resolve_command(args)
            case 'init-db':
                init_db_command(args)
            case _:
                parser.print_help()
                sys.exit(1)
    except KeyboardInterrupt:
        print('\nInterrupted by user')
        sys.exit(0)


if __name__ == '__main__':
    main()
