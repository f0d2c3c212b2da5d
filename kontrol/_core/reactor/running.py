import asyncio
import logging
import signal
import threading
from collections.abc import Collection, MutableSequence

from kontrol._cogs.aiokits import aioflags, aiotasks
from kontrol._cogs.clients import sources
from kontrol._cogs.configs import configuration
from kontrol._core.engines import posting
from kontrol._core.reactor import informers, workers

logger = logging.getLogger(__name__)


class Manager:
    """
    A set of controllers sharing the informers (and caches) of one source of truth.
    """

    def __init__(
            self,
            source: sources.Source,
            *,
            settings: configuration.OperatorSettings | None = None,
            factory: informers.InformerFactory | None = None,
    ) -> None:
        super().__init__()
        self.source = source
        self.settings = settings if settings is not None else configuration.OperatorSettings()
        self.factory = (factory if factory is not None else
                        informers.InformerFactory(source=source, settings=self.settings))
        self.controllers: list[workers.Controller] = []

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {[c.name for c in self.controllers]}>'

    def add(self, controller: workers.Controller) -> workers.Controller:
        if any(c.name == controller.name for c in self.controllers):
            raise ValueError(f"The controller {controller.name!r} is already added.")
        self.controllers.append(controller)
        return controller

    async def run(
            self,
            *,
            stop_flag: aioflags.Flag | None = None,
            ready_flag: aioflags.Flag | None = None,
    ) -> None:
        await operator(self, stop_flag=stop_flag, ready_flag=ready_flag)


def run(
        manager: Manager,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        stop_flag: aioflags.Flag | None = None,
        ready_flag: aioflags.Flag | None = None,
) -> None:
    """
    Run the whole operator synchronously.

    This function should be used to run an operator in normal sync mode.
    """
    coro = operator(manager, stop_flag=stop_flag, ready_flag=ready_flag)
    try:
        if loop is not None:
            loop.run_until_complete(coro)
        else:
            asyncio.run(coro)
    except asyncio.CancelledError:
        pass


async def operator(
        manager: Manager,
        *,
        stop_flag: aioflags.Flag | None = None,
        ready_flag: aioflags.Flag | None = None,
) -> None:
    """
    Run the whole operator asynchronously.

    This function should be used to run an operator in an asyncio event-loop
    if the operator is orchestrated explicitly and manually.

    It is efficiently `spawn_tasks` + `run_tasks` with some safety.
    """
    existing_tasks = await aiotasks.all_tasks()
    operator_tasks = await spawn_tasks(manager, stop_flag=stop_flag, ready_flag=ready_flag)
    try:
        await run_tasks(operator_tasks, ignored=existing_tasks)
    finally:
        await manager.factory.stop()
        close = getattr(manager.source, 'close', None)
        if close is not None:
            await close()


async def spawn_tasks(
        manager: Manager,
        *,
        stop_flag: aioflags.Flag | None = None,
        ready_flag: aioflags.Flag | None = None,
) -> Collection[aiotasks.Task]:
    """
    Spawn all the tasks needed to run the operator.

    The tasks are properly inter-connected with the synchronisation primitives.
    """
    loop = asyncio.get_running_loop()
    settings = manager.settings

    # All tasks of the operator are synced via these primitives and structures:
    event_queue: posting.EventQueue = asyncio.Queue()
    signal_flag: aiotasks.Future = asyncio.Future()
    stopping = asyncio.Event()
    tasks: MutableSequence[aiotasks.Task] = []
    graceful_tasks: MutableSequence[aiotasks.Task] = []

    # The reconcilers and the logging handlers post the events via the contextvars,
    # which are inherited by all tasks created from now on.
    posting.settings_var.set(settings)
    posting.event_queue_var.set(event_queue)
    posting.event_queue_loop_var.set(loop)

    # Few common background forever-running infrastructural tasks (irregular root tasks).
    tasks.append(asyncio.create_task(
        name="stop-flag checker",
        coro=_stop_flag_checker(
            signal_flag=signal_flag,
            stop_flag=stop_flag,
            stopping=stopping,
            graceful_tasks=graceful_tasks)))  # used as a "live" view, populated later.
    tasks.append(asyncio.create_task(
        name="ultimate termination",
        coro=_ultimate_termination(
            settings=settings,
            stop_flag=stop_flag)))
    tasks.append(asyncio.create_task(
        name="readiness reporter",
        coro=_readiness_reporter(
            controllers=manager.controllers,
            ready_flag=ready_flag)))

    # Object-event posting. Events are queued in-memory and posted in the background.
    tasks.append(aiotasks.create_guarded_task(
        name="poster of events", logger=logger,
        coro=posting.poster(
            event_queue=event_queue,
            source=manager.source)))

    # The failures of the shared informers (e.g. fatal API errors) stop the whole operator.
    tasks.append(aiotasks.create_guarded_task(
        name="informers' failure watcher", logger=logger,
        coro=manager.factory.wait_for_failure()))

    # The informers are started as soon as the controllers acquire them.
    await manager.factory.start()
    for controller in manager.controllers:
        task = aiotasks.create_guarded_task(
            name=f"controller {controller.name!r}", logger=logger, finishable=True,
            coro=controller.run(manager.factory, stopping))
        tasks.append(task)
        graceful_tasks.append(task)

    # Ensure that all guarded tasks got control for a moment to enter the guard.
    await asyncio.sleep(0)

    # On Ctrl+C or pod termination, stop all tasks gracefully.
    if threading.current_thread() is threading.main_thread():
        try:
            loop.add_signal_handler(signal.SIGINT, _set_signal, signal_flag, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, _set_signal, signal_flag, signal.SIGTERM)
        except NotImplementedError:
            logger.warning("OS signals are ignored: can't add signal handler in Windows.")
    else:
        logger.warning("OS signals are ignored: running not in the main thread.")

    return tasks


async def run_tasks(
        root_tasks: Collection[aiotasks.Task],
        *,
        ignored: Collection[aiotasks.Task] = frozenset(),
) -> None:
    """
    Orchestrate the tasks and terminate them gracefully when needed.

    The root tasks are expected to run forever. Their number is limited. Once
    any of them exits, the whole operator and all other root tasks should exit.

    The hung tasks are those that were spawned during the operator runtime,
    and were not cancelled/exited on the root tasks termination (e.g. informers).
    They are given some extra time to finish, after which they are cancelled too.
    """

    # Run the infinite tasks until one of them fails/exits (they never exit normally).
    # If the operator is cancelled, propagate the cancellation to all the sub-tasks.
    try:
        root_done, root_pending = await aiotasks.wait(root_tasks, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        await aiotasks.stop(root_tasks, title="Root", logger=logger, cancelled=True, interval=10)
        hung_tasks = await aiotasks.all_tasks(ignored=ignored)
        await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)
        raise

    # If the operator is intact, but one of the root tasks has exited (successfully or not),
    # cancel all the remaining root tasks, and gracefully exit other spawned sub-tasks.
    root_cancelled, _ = await aiotasks.stop(root_pending, title="Root", logger=logger)

    # After the root tasks are all gone, cancel any spawned sub-tasks (e.g. informers).
    hung_tasks = await aiotasks.all_tasks(ignored=ignored)
    try:
        hung_done, hung_pending = await aiotasks.wait(hung_tasks, timeout=5)
    except asyncio.CancelledError:
        await aiotasks.stop(hung_tasks, title="Hung", logger=logger, cancelled=True, interval=1)
        raise

    # If the operator is intact, but the timeout is reached, forcely cancel the sub-tasks.
    hung_cancelled, _ = await aiotasks.stop(hung_pending, title="Hung", logger=logger, interval=1)

    # If succeeded or if cancellation is silenced, re-raise from failed tasks (if any).
    await aiotasks.reraise(root_done | root_cancelled | hung_done | hung_cancelled)


def _set_signal(signal_flag: aiotasks.Future, signum: signal.Signals) -> None:
    # A repeated signal must not break the loop's signal handler.
    if not signal_flag.done():
        signal_flag.set_result(signum)


async def _stop_flag_checker(
        *,
        signal_flag: aiotasks.Future,
        stop_flag: aioflags.Flag | None,
        stopping: asyncio.Event,
        graceful_tasks: Collection[aiotasks.Task],
) -> None:
    """
    A top-level task for external stopping by setting a stop-flag. Once set,
    the controllers are stopped gracefully (the in-flight reconciliations
    are allowed to finish), and then this task exits, and thus all other
    top-level tasks will be cancelled.
    """

    # Selects the flags to be awaited (if set).
    flags = [signal_flag]
    if stop_flag is not None:
        flags.append(asyncio.create_task(aioflags.wait_flag(stop_flag), name="stop-flag waiter"))

    # Wait until one of the stoppers is set/raised.
    try:
        done, pending = await asyncio.wait(flags, return_when=asyncio.FIRST_COMPLETED)
        future = done.pop()
        result = await future
    except asyncio.CancelledError:
        return  # operator is stopping for any other reason
    finally:
        for flag in flags:
            if flag is not signal_flag and not flag.done():
                flag.cancel()

    if result is None or result is True:
        logger.info("Stop-flag is raised. Operator is stopping.")
    elif isinstance(result, signal.Signals):
        logger.info("Signal %s is received. Operator is stopping.", result.name)
    else:
        logger.info("Stop-flag is set to %r. Operator is stopping.", result)

    stopping.set()
    await aiotasks.wait(graceful_tasks)


async def _ultimate_termination(
        *,
        settings: configuration.OperatorSettings,
        stop_flag: aioflags.Flag | None,
) -> None:
    """
    Ensure that SIGKILL is sent regardless of the operator's stopping routines.

    Try to be gentle and kill only the thread with the operator, not the whole
    process or a process group. If this is the main thread (as in most cases),
    this would imply the process termination too.

    Intentional stopping via a stop-flag is ignored.
    """
    # Sleep forever, or until cancelled, which happens when the operator begins its shutdown.
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        if not aioflags.check_flag(stop_flag):
            if settings.process.ultimate_exiting_timeout is not None:
                loop = asyncio.get_running_loop()
                loop.call_later(settings.process.ultimate_exiting_timeout,
                                signal.pthread_kill, threading.get_ident(), signal.SIGKILL)


async def _readiness_reporter(
        *,
        controllers: Collection[workers.Controller],
        ready_flag: aioflags.Flag | None,
) -> None:
    """
    Raise the ready-flag once all the controllers have passed their cache-sync barriers.
    """
    for controller in controllers:
        await controller.synced.wait()
    logger.debug("All controllers have synced their caches. The operator is ready.")
    await aioflags.raise_flag(ready_flag)

    # Sleep forever, or until cancelled, which happens when the operator begins its shutdown.
    await asyncio.Event().wait()
