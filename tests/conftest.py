import asyncio
import io
import logging
import re
import sys

import pytest

import kontrol
from kontrol._core.actions.loggers import ObjectPrefixingTextFormatter, configure
from kontrol._core.engines.posting import settings_var
from kontrol.testing import MemorySource


# Make all tests in this directory and below asyncio-compatible by default.
# Due to how pytest-async checks for these markers, they should be added as early as possible.
@pytest.hookimpl(hookwrapper=True)
def pytest_pycollect_makeitem(collector, name, obj):
    if collector.funcnamefilter(name) and asyncio.iscoroutinefunction(obj):
        pytest.mark.asyncio(obj)
    yield


@pytest.fixture()
def resource():
    return kontrol.Resource('apps.myorg.io', 'v1alpha1', 'customdeployments',
                            kind='CustomDeployment', subresources=frozenset({'status'}))


@pytest.fixture()
def dependent_resource():
    return kontrol.Resource('apps', 'v1', 'deployments',
                            kind='Deployment', subresources=frozenset({'status'}))


@pytest.fixture()
def cluster_resource():
    return kontrol.Resource('apps.myorg.io', 'v1alpha1', 'clusterthings', namespaced=False,
                            kind='ClusterThing')


@pytest.fixture()
def settings():
    return kontrol.OperatorSettings()


@pytest.fixture()
def settings_via_contextvar(settings):
    token = settings_var.set(settings)
    try:
        yield
    finally:
        settings_var.reset(token)


@pytest.fixture()
def source():
    return MemorySource()


class FakeSleep:
    """
    An instant replacement of the interruptible sleep, with the delays remembered.

    It yields control to the event loop, so that other tasks can progress.
    """

    def __init__(self):
        super().__init__()
        self.delays = []

    async def __call__(self, delay, wakeup=None):
        self.delays.append(delay)
        await asyncio.sleep(0)
        return None


@pytest.fixture()
def sleep():
    return FakeSleep()


#
# Helpers for the logging checks.
#


@pytest.fixture()
def logstream(caplog):
    """ Prefixing is done at the final output. We have to intercept it. """

    logger = logging.getLogger()
    handlers = list(logger.handlers)

    # Setup all log levels of sub-libraries. A side-effect: the handlers are also added.
    configure(verbose=True)

    # Remove any stream handlers added in the step above. But keep the caplog's handlers.
    for handler in list(logger.handlers):
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stderr:
            logger.removeHandler(handler)

    # Inject our stream-intercepting handler.
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    formatter = ObjectPrefixingTextFormatter('prefix %(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    try:
        with caplog.at_level(logging.DEBUG):
            yield stream
    finally:
        logger.removeHandler(handler)
        logger.handlers[:] = handlers  # undo `configure()`


@pytest.fixture()
def assert_logs(caplog):
    """
    A function to assert the logs are present (by pattern).

    The listed message patterns MUST be present, in the order specified.
    Some other log messages can also be present, but they are ignored.
    """
    caplog.set_level(logging.DEBUG)

    def assert_logs_fn(patterns, prohibited=[]):
        __traceback_hide__ = True
        remaining_patterns = list(patterns)
        for message in caplog.messages:
            if remaining_patterns and re.search(remaining_patterns[0], message):
                remaining_patterns[:1] = []
            for pattern in prohibited:
                if re.search(pattern, message):
                    raise AssertionError(f"Prohibited log pattern found: {message!r} ~ {pattern!r}")
        if remaining_patterns:
            raise AssertionError(f"Few patterns were missed: {remaining_patterns!r}")

    return assert_logs_fn
