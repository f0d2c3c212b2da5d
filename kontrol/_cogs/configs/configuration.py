"""
All configuration flags, options, settings to fine-tune an operator.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults).

The settings are passed explicitly to every component that needs them:
there is no global/ambient configuration anywhere in the framework.
"""
import dataclasses
import logging
from collections.abc import Iterable


@dataclasses.dataclass
class ProcessSettings:
    """
    Settings for the OS processes: e.g. when started via CLI as ``kontrol run``.
    """

    ultimate_exiting_timeout: float | None = 10 * 60
    """
    How long to wait for the graceful exit before SIGKILL'ing the operator.

    The countdown goes from when a graceful signal arrives (SIGTERM/SIGINT),
    regardless of what is happening in the graceful exiting routine.
    Set to ``None`` to disable (on your own risk).
    """


@dataclasses.dataclass
class WatchingSettings:

    server_timeout: float | None = None
    """
    The maximum duration of one streaming request.
    If ``None``, then obey the server-side timeouts.
    """

    client_timeout: float | None = None
    """
    An HTTP/HTTPS session timeout to use in watch requests.
    """

    connect_timeout: float | None = None
    """
    An HTTP/HTTPS connection timeout to use in watch requests.
    """

    reconnect_backoff: float = 0.1
    """
    How long should a pause be between the re-listings after a watch-stream
    is closed by the server (to prevent API flooding).
    """

    error_delays: Iterable[float] = (1, 1, 2, 3, 5, 8, 13, 21, 34, 55, 89, 144, 233, 377, 610)
    """
    Backoff intervals in case of transient errors in listing or watching.

    Every further error leads to the next, even bigger delay.
    The last delay is repeated if the errors continue beyond the sequence.
    Every successful listing resets the backoff intervals.

    The value must be re-iterable: ``iter()`` is called on every new
    sequence of errors. To disable the backoff, set it to ``()``.
    """


@dataclasses.dataclass
class ResyncingSettings:

    interval: float = 0
    """
    How often (in seconds) the whole cache is re-delivered as "sync" deltas.

    This forces the re-evaluation of all objects even without real changes.
    ``0`` disables the periodic resyncing.
    """


@dataclasses.dataclass
class QueueingSettings:
    """
    Settings for the rate-limited work queues of the controllers.
    """

    base_delay: float = 0.005
    """
    The initial per-key retry delay (in seconds), doubled on every failure.
    """

    max_delay: float = 1000
    """
    The ceiling of the per-key retry delay (in seconds).
    """

    qps: float | None = 10
    """
    The overall rate of retries of all keys (in keys per second).
    ``None`` disables the overall rate limiting (only per-key delays remain).
    """

    burst: int = 100
    """
    How many retries can happen at once before the overall rate applies.
    """

    max_retries: int | None = 15
    """
    How many times a failing key is retried before it is dropped and reported.
    ``None`` means retrying forever (not recommended).
    """


@dataclasses.dataclass
class WorkersSettings:

    count: int = 1
    """
    How many workers of every controller reconcile the keys in parallel.
    The same key is never reconciled by two workers at the same time.
    """

    exit_timeout: float | None = None
    """
    How long the in-flight reconciliations are awaited on the operator's exit
    before they are cancelled. ``None`` means waiting until they finish.
    """


@dataclasses.dataclass
class ReconcilingSettings:

    finalizer: str = 'kontrol.dev/finalizer'
    """
    The default finalizer token used by the reconcilers to block the deletion
    of the objects until their dependents are torn down.
    Every controller can have its own token; this is only the default.
    """

    teardown_delay: float = 5
    """
    How soon (in seconds) a pending teardown is re-checked if no events arrive.
    """


@dataclasses.dataclass
class PostingSettings:

    enabled: bool = True
    """
    Should the log messages and failures be posted as events for an object.
    """

    level: int = logging.INFO
    """
    A minimal level of logging events that will be posted as object events.
    """

    reporting_component: str = 'kontrol'
    """
    A name of the reporting component in the posted events.
    """

    event_name_prefix: str = 'kontrol-event-'
    """
    A prefix for the generated names of the posted events.
    """


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: float | None = 5 * 60
    """
    A timeout for the API requests, except for watching (see ``watching``).
    """

    connect_timeout: float | None = None
    """
    A timeout for establishing the connection to the API server.
    """

    error_backoffs: Iterable[float] = (1, 1, 2, 3)
    """
    Backoff intervals in case of retryable server errors (5xx) and timeouts.
    The request is retried as many times as there are values, plus one.
    """


@dataclasses.dataclass
class OperatorSettings:
    process: ProcessSettings = dataclasses.field(default_factory=ProcessSettings)
    watching: WatchingSettings = dataclasses.field(default_factory=WatchingSettings)
    resyncing: ResyncingSettings = dataclasses.field(default_factory=ResyncingSettings)
    queueing: QueueingSettings = dataclasses.field(default_factory=QueueingSettings)
    workers: WorkersSettings = dataclasses.field(default_factory=WorkersSettings)
    reconciling: ReconcilingSettings = dataclasses.field(default_factory=ReconcilingSettings)
    posting: PostingSettings = dataclasses.field(default_factory=PostingSettings)
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
