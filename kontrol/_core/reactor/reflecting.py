"""
The reflector: lists and watches the source of truth, and feeds the delta queue.

The reflector is an explicit state machine of three states:

* **LISTING**: get a full snapshot and replace the queue's known state with it.
  This also detects the deletions that happened while we were not watching.
* **WATCHING**: stream the changes since the last seen resource version;
  every event becomes exactly one delta (bookmarks only advance the version).
* **BACKOFF**: sleep after a transient error, with the growing delays;
  then go LISTING again.

The watch-stream's end (e.g. closed by the server) and the "resource version
too old" errors lead to LISTING. The unauthorized/forbidden errors are fatal:
they are escalated to the caller, the reflector does not guess the recovery.

The sleeping is injectable, so that the tests can run without real delays.
"""
import asyncio
import enum
import logging
from collections.abc import Mapping
from typing import Any

from kontrol._cogs.aiokits import aiotasks
from kontrol._cogs.clients import errors, sources
from kontrol._cogs.configs import configuration
from kontrol._cogs.structs import bodies, references
from kontrol._core.actions import throttlers
from kontrol._core.reactor import fifo

logger = logging.getLogger(__name__)

HTTP_TOO_MANY_REQUESTS_CODE = 429
DEFAULT_RETRY_DELAY_SECONDS = 1


class ReflectorState(enum.Enum):
    LISTING = enum.auto()
    WATCHING = enum.auto()
    BACKOFF = enum.auto()


class WatchingError(Exception):
    """
    Raised when an unexpected event arrives in the watch-stream.
    """


class Reflector:

    def __init__(
            self,
            *,
            resource: references.Resource,
            source: sources.ChangeSource,
            queue: fifo.DeltaFIFO,
            settings: configuration.OperatorSettings,
            namespace: references.Namespace = None,
            sleep: throttlers.Sleeper = throttlers.sleep,
    ) -> None:
        super().__init__()
        self.resource = resource
        self.namespace = namespace
        self.source = source
        self.queue = queue
        self.settings = settings
        self.sleep = sleep
        self.state = ReflectorState.LISTING
        self.resource_version: str | None = None
        self.throttler = throttlers.Throttler()
        self._retry_after: float | None = None

    def __repr__(self) -> str:
        where = f'in {self.namespace!r}' if self.namespace is not None else 'cluster-wide'
        return f'<{self.__class__.__name__}: {self.resource} {where}: {self.state.name}>'

    async def run(self, stop: asyncio.Event) -> None:
        """
        Reflect the source of truth into the queue until stopped.

        Never returns until the stop-event is set, or a fatal error happens.
        """
        where = f'in {self.namespace!r}' if self.namespace is not None else 'cluster-wide'
        logger.debug(f"Starting the reflector for {self.resource} {where}.")
        resyncer: aiotasks.Task | None = None
        interval = self.settings.resyncing.interval
        if interval and interval > 0:
            resyncer = asyncio.create_task(self.resync(stop, interval), name=f'resync of {self.resource}')
        try:
            while not stop.is_set():
                match self.state:
                    case ReflectorState.LISTING:
                        await self.list()
                    case ReflectorState.WATCHING:
                        await self.watch(stop)
                    case ReflectorState.BACKOFF:
                        await self.backoff(stop)
        finally:
            if resyncer is not None:
                await aiotasks.stop([resyncer], title='Resyncing', quiet=True, logger=logger)
            logger.debug(f"Stopping the reflector for {self.resource} {where}.")

    async def list(self) -> None:
        try:
            objs, resource_version = await self.source.list(self.resource, namespace=self.namespace)
        except errors.FATAL_ERRORS:
            raise
        except (errors.APIError, *errors.TRANSIENT_ERRORS) as e:
            self._fail(e)
        else:
            await self.queue.replace(objs)
            self.resource_version = resource_version
            self.state = ReflectorState.WATCHING
            logger.debug(f"Listed {len(objs)} objects of {self.resource} at version {resource_version!r}.")

    async def watch(self, stop: asyncio.Event) -> None:
        consumer = asyncio.create_task(self._consume(), name=f'watch of {self.resource}')
        stopper = asyncio.create_task(stop.wait(), name=f'stop-waiter of {self.resource}')
        try:
            await asyncio.wait({consumer, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await aiotasks.stop([stopper, consumer], title='Watching', quiet=True)

        try:
            consumer.result()
        except asyncio.CancelledError:
            return  # stopped while streaming; the stop-event is set.
        except errors.APIGoneError:
            logger.debug(f"The resource version {self.resource_version!r} is too old. Re-listing.")
            self.state = ReflectorState.LISTING
        except errors.FATAL_ERRORS:
            raise
        except (errors.APIError, WatchingError, *errors.TRANSIENT_ERRORS) as e:
            self._fail(e)
        else:
            # The stream is closed normally (e.g. by the server): re-list after a short pause.
            self.throttler.reset()
            self.state = ReflectorState.LISTING
            await self.sleep(self.settings.watching.reconnect_backoff, stop)

    async def backoff(self, stop: asyncio.Event) -> None:
        if self._retry_after is not None:
            delay: float | None = self._retry_after
            self._retry_after = None
        else:
            delay = self.throttler.next_delay(self.settings.watching.error_delays)
        if delay is not None:
            logger.debug(f"Backing off for {delay} seconds before re-listing {self.resource}.")
            await self.sleep(delay, stop)
        self.state = ReflectorState.LISTING

    async def resync(self, stop: asyncio.Event, interval: float) -> None:
        """ Periodically re-deliver all cached objects as "sync" deltas. """
        while not stop.is_set():
            unslept = await self.sleep(interval, stop)
            if unslept is not None or stop.is_set():
                break
            logger.debug(f"Resyncing all cached objects of {self.resource}.")
            await self.queue.resync()

    async def _consume(self) -> None:
        stream = self.source.watch(self.resource, namespace=self.namespace, since=self.resource_version)
        async for raw_input in stream:
            await self.handle(raw_input)

    async def handle(self, raw_input: Mapping[str, Any]) -> None:
        """ Turn one raw watch-event into a delta, or into an error. """
        try:
            event = sources.WatchEvent.parse(raw_input)
        except ValueError as e:
            raise WatchingError(str(e)) from e

        match event.type:
            case sources.EventType.ERROR:
                raise errors.from_status(event.object)  # type: ignore[arg-type]
            case sources.EventType.BOOKMARK:
                pass
            case sources.EventType.ADDED:
                await self.queue.add(event.object)
            case sources.EventType.MODIFIED:
                await self.queue.update(event.object)
            case sources.EventType.DELETED:
                await self.queue.delete(event.object)

        resource_version = bodies.get_resource_version(event.object)
        if resource_version is not None:
            self.resource_version = resource_version

        # A delivered event proves the watch is healthy, not merely the listing before it.
        self.throttler.reset()

    def _fail(self, exc: BaseException) -> None:
        if isinstance(exc, errors.APIError) and exc.status == HTTP_TOO_MANY_REQUESTS_CODE:
            retry_after = exc.details.get("retryAfterSeconds") if exc.details else None
            self._retry_after = retry_after or DEFAULT_RETRY_DELAY_SECONDS
            logger.warning(f"Too many requests for {self.resource}; "
                           f"retrying after {self._retry_after} seconds: {exc}")
        else:
            logger.error(f"Listing or watching of {self.resource} has failed: {exc!r}")
        self.state = ReflectorState.BACKOFF
