import dataclasses
import functools
import importlib
import importlib.util
import os.path
from typing import Any, Callable

import click

from kontrol._cogs.aiokits import aioflags
from kontrol._cogs.configs import configuration, loading
from kontrol._core.actions import loggers
from kontrol._core.reactor import running


@dataclasses.dataclass()
class CLIControls:
    """ The run's controls, which are impossible to pass via CLI (e.g. in tests). """
    ready_flag: aioflags.Flag | None = None
    stop_flag: aioflags.Flag | None = None
    settings: configuration.OperatorSettings | None = None


class LogFormatParamType(click.Choice):

    def __init__(self) -> None:
        super().__init__(choices=[v.name.lower() for v in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        name: str = super().convert(value, param, ctx)
        return loggers.LogFormat[name.upper()]


def logging_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """ A decorator to configure logging in all commands the same way."""
    @click.option('-v', '--verbose', is_flag=True)
    @click.option('-d', '--debug', is_flag=True)
    @click.option('-q', '--quiet', is_flag=True)
    @click.option('--log-format', type=LogFormatParamType(), default='full')
    @click.option('--log-refkey', type=str)
    @click.option('--log-prefix/--no-log-prefix', default=None)
    @functools.wraps(fn)  # to preserve other opts/args
    def wrapper(verbose: bool, quiet: bool, debug: bool,
                log_format: loggers.LogFormat = loggers.LogFormat.FULL,
                log_prefix: bool | None = False,
                log_refkey: str | None = None,
                *args: Any, **kwargs: Any) -> Any:
        loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                          log_format=log_format, log_refkey=log_refkey, log_prefix=log_prefix)
        return fn(*args, **kwargs)

    return wrapper


def load_target(target: str) -> Any:
    """
    Load an object by its reference: ``pkg.module:attr`` or ``path/to/file.py:attr``.

    The attribute can be nested (``module:obj.attr``). If omitted, ``manager`` is used.
    """
    where, _, attrs = target.partition(':')
    if not where:
        raise click.BadParameter(f"No module or file in the target: {target!r}")

    if where.endswith('.py') or os.path.sep in where:
        name, _ = os.path.splitext(os.path.basename(where))
        spec = importlib.util.spec_from_file_location(name, where)
        if spec is None or spec.loader is None:
            raise click.BadParameter(f"Cannot load the file: {where!r}")
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    else:
        module = importlib.import_module(where)

    obj: Any = module
    for attr in (attrs or 'manager').split('.'):
        try:
            obj = getattr(obj, attr)
        except AttributeError:
            raise click.BadParameter(f"No attribute {attr!r} in {target!r}") from None
    return obj


def resolve_manager(target: Any, settings: configuration.OperatorSettings) -> running.Manager:
    """
    Get the manager from the loaded target: either the manager itself, or its factory.

    The factories are called with the settings as a keyword argument,
    so that the settings from the config file & CLI reach the controllers.
    """
    if isinstance(target, running.Manager):
        return target
    if callable(target):
        manager = target(settings=settings)
        if isinstance(manager, running.Manager):
            return manager
    raise click.UsageError(f"The target is neither a manager nor a manager factory: {target!r}")


@click.version_option(prog_name='kontrol')
@click.group(name='kontrol', context_settings=dict(
    auto_envvar_prefix='KONTROL',
))
def main() -> None:
    pass


@main.command()
@logging_options
@click.option('-c', '--config', 'config_path', type=click.Path(exists=True, dir_okay=False))
@click.option('-w', '--workers', type=click.IntRange(min=1))
@click.option('--resync', type=click.FloatRange(min=0))
@click.option('--max-retries', type=click.IntRange(min=0))
@click.argument('target', type=str)
@click.make_pass_decorator(CLIControls, ensure=True)
def run(
        __controls: CLIControls,
        target: str,
        config_path: str | None,
        workers: int | None,
        resync: float | None,
        max_retries: int | None,
) -> None:
    """ Start an operator process and reconcile the objects. """
    loaded = load_target(target)
    if isinstance(loaded, running.Manager):
        settings = loaded.settings
    elif __controls.settings is not None:
        settings = __controls.settings
    else:
        settings = configuration.OperatorSettings()

    try:
        if config_path is not None:
            loading.load_settings(config_path, settings=settings)
    except loading.SettingsError as e:
        raise click.BadParameter(str(e), param_hint='--config') from e
    if workers is not None:
        settings.workers.count = workers
    if resync is not None:
        settings.resyncing.interval = resync
    if max_retries is not None:
        settings.queueing.max_retries = max_retries

    manager = resolve_manager(loaded, settings)
    return running.run(
        manager,
        stop_flag=__controls.stop_flag,
        ready_flag=__controls.ready_flag,
    )
