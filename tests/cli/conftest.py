import functools
import logging
import sys

import click.testing
import pytest

from kontrol.cli import main

SCRIPT = """
import kontrol
from kontrol.testing import MemorySource

manager = kontrol.Manager(MemorySource())
not_a_manager = 123


def make_manager(settings):
    return kontrol.Manager(MemorySource(), settings=settings)


def make_nothing(settings):
    return None
"""


@pytest.fixture(autouse=True)
def srcdir(tmp_path, monkeypatch):
    tmp_path.joinpath('operator1.py').write_text(SCRIPT)
    pkgdir = tmp_path / 'package'
    pkgdir.mkdir()
    pkgdir.joinpath('__init__.py').write_text('')
    pkgdir.joinpath('module_1.py').write_text(SCRIPT)

    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.chdir(tmp_path)
    yield tmp_path


@pytest.fixture(autouse=True)
def clean_modules_cache():
    # Otherwise, the first loaded test-modules remain there forever,
    # preventing 2nd and further tests from passing.
    for key in list(sys.modules.keys()):
        if key.startswith('package'):
            del sys.modules[key]


@pytest.fixture(autouse=True)
def clean_root_logger():
    logger = logging.getLogger()
    handlers = list(logger.handlers)
    level = logger.level
    try:
        yield
    finally:
        logger.handlers[:] = handlers
        logger.setLevel(level)


@pytest.fixture()
def runner():
    runner = click.testing.CliRunner()
    return runner


@pytest.fixture()
def invoke(runner):
    return functools.partial(runner.invoke, main)


@pytest.fixture()
def real_run(mocker):
    return mocker.patch('kontrol._core.reactor.running.run')
