"""
All the functions to post the events for the objects of the source of truth.

The events make the progress and the failures of the reconciliations visible
on the objects themselves, not only in the logs of the operator.

The actual posting runs in the background, and posts the events as soon
as they are queued. The events are queued in two ways:

* Explicit calls to `kontrol.event`, `kontrol.info`, `kontrol.warn`, `kontrol.exception`.
* Logging messages made on the object logger (above INFO level by default).

This also includes all logging messages posted by the framework itself,
e.g. when a key is dropped after exhausting its retries.
"""
import asyncio
import logging
import sys
from collections.abc import Mapping
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, NamedTuple, NoReturn

from kontrol._cogs.clients import sources
from kontrol._cogs.configs import configuration
from kontrol._cogs.structs import bodies
from kontrol._core.actions import loggers

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    EventQueue = asyncio.Queue["ObjectEvent"]
else:
    EventQueue = asyncio.Queue

# Logging can happen cross-thread. We have to remember our main event-loop with
# the queue consumer, to make thread-safe calls both from inside that event-loop and from outside.
event_queue_loop_var: ContextVar[asyncio.AbstractEventLoop] = ContextVar('event_queue_loop_var')
event_queue_var: ContextVar[EventQueue] = ContextVar('event_queue_var')

# Per-operator container for settings. We only need the posting settings from there.
settings_var: ContextVar[configuration.OperatorSettings] = ContextVar('settings_var')


class ObjectEvent(NamedTuple):
    """
    A single event to be posted, with all ref-information preserved.
    It can exist and be posted even after the object is deleted.
    """
    ref: bodies.ObjectReference
    type: str
    reason: str
    message: str


def enqueue(
        ref: bodies.ObjectReference,
        type: str,
        reason: str,
        message: str,
) -> None:
    try:
        loop = event_queue_loop_var.get()
        queue = event_queue_var.get()
    except LookupError:
        # No operator is running in this context (e.g. a reconciler is called directly).
        logger.debug(f"Event is not posted: no poster is running. {type}/{reason}: {message}")
        return

    event = ObjectEvent(ref=ref, type=type, reason=reason, message=message)

    running_loop: asyncio.AbstractEventLoop | None
    try:
        running_loop = asyncio.get_running_loop()
    except RuntimeError:
        running_loop = None

    if running_loop is loop:
        queue.put_nowait(event)
    else:
        # No event-loop or another event-loop: assume another thread. Block until enqueued there.
        future = asyncio.run_coroutine_threadsafe(queue.put(event), loop=loop)
        future.result()  # block, wait, re-raise.


def event(
        obj: Mapping[str, Any],
        *,
        type: str,
        reason: str,
        message: str = '',
) -> None:
    settings = settings_var.get(None)
    if settings is None or settings.posting.enabled:
        enqueue(ref=bodies.build_object_reference(obj), type=type, reason=reason, message=message)


def info(
        obj: Mapping[str, Any],
        *,
        reason: str,
        message: str = '',
) -> None:
    settings = settings_var.get(None)
    if settings is None or (settings.posting.enabled and settings.posting.level <= logging.INFO):
        enqueue(ref=bodies.build_object_reference(obj), type='Normal', reason=reason, message=message)


def warn(
        obj: Mapping[str, Any],
        *,
        reason: str,
        message: str = '',
) -> None:
    settings = settings_var.get(None)
    if settings is None or (settings.posting.enabled and settings.posting.level <= logging.WARNING):
        enqueue(ref=bodies.build_object_reference(obj), type='Warning', reason=reason, message=message)


def exception(
        obj: Mapping[str, Any],
        *,
        reason: str = '',
        message: str = '',
        exc: BaseException | None = None,
) -> None:
    if exc is None:
        _, exc, _ = sys.exc_info()
    reason = reason if reason else type(exc).__name__
    message = f'{message} {exc}' if message and exc else f'{exc}' if exc else f'{message}'
    settings = settings_var.get(None)
    if settings is None or (settings.posting.enabled and settings.posting.level <= logging.ERROR):
        enqueue(ref=bodies.build_object_reference(obj), type='Error', reason=reason, message=message)


async def poster(
        *,
        event_queue: EventQueue,
        source: sources.Source,
) -> NoReturn:
    """
    Post the events in the background as they are queued.

    If the source cannot post events (it has no such capability), the events
    are consumed and only logged at the debug level, so that the queue
    does not grow infinitely.
    """
    while True:
        posted_event = await event_queue.get()
        if isinstance(source, sources.EventSink):
            await source.post_event(
                ref=posted_event.ref,
                type=posted_event.type,
                reason=posted_event.reason,
                message=posted_event.message,
            )
        else:
            logger.debug(f"Event is not posted (unsupported by the source): {posted_event!r}")


class EventPoster(logging.Handler):
    """
    A handler to post the log messages of the object loggers as events.
    """

    def createLock(self) -> None:
        # Save some time on unneeded locks. Events are posted in the background.
        # We only put events to the queue, which is already lock-protected.
        self.lock = None

    def filter(self, record: logging.LogRecord) -> bool:
        # Only those which have an object referred (see: `ObjectLogger`).
        settings: configuration.OperatorSettings | None = getattr(record, 'settings', None)
        level_ok = settings is not None and record.levelno >= settings.posting.level
        enabled = settings is not None and settings.posting.enabled
        has_ref = hasattr(record, 'k8s_ref')
        skipped = bool(getattr(record, 'k8s_skip', False))
        return enabled and level_ok and has_ref and not skipped and bool(super().filter(record))

    def emit(self, record: logging.LogRecord) -> None:
        # Same try-except as in e.g. `logging.StreamHandler`.
        try:
            ref = getattr(record, 'k8s_ref')
            type = (
                "Debug" if record.levelno <= logging.DEBUG else
                "Normal" if record.levelno <= logging.INFO else
                "Warning" if record.levelno <= logging.WARNING else
                "Error" if record.levelno <= logging.ERROR else
                "Fatal" if record.levelno <= logging.FATAL else
                logging.getLevelName(record.levelno).capitalize())
            reason = 'Logging'
            message = self.format(record)
            enqueue(
                ref=ref,
                type=type,
                reason=reason,
                message=message)
        except Exception:
            self.handleError(record)


loggers.logger.addHandler(EventPoster())
