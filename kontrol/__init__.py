"""
The main kontrol module for all the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the framework's top-level interface,
# as it is seen by the users. So, we export the individual functions.

from kontrol._cogs.aiokits.aioflags import (
    Flag,
)
from kontrol._cogs.clients.auth import (
    AccessError,
    ConnectionInfo,
    login_with_service_account,
)
from kontrol._cogs.clients.errors import (
    APIError,
    APIUnauthorizedError,
    APIForbiddenError,
    APINotFoundError,
    APIConflictError,
    APIGoneError,
    APIServerError,
    ResourceVersionTooOldError,
)
from kontrol._cogs.clients.remote import (
    RemoteSource,
)
from kontrol._cogs.clients.sources import (
    ChangeSource,
    Mutator,
    EventSink,
    EventType,
    WatchEvent,
)
from kontrol._cogs.configs.configuration import (
    OperatorSettings,
)
from kontrol._cogs.configs.loading import (
    SettingsError,
    load_settings,
)
from kontrol._cogs.helpers.typedefs import (
    Logger,
)
from kontrol._cogs.helpers.versions import (
    version as __version__,
)
from kontrol._cogs.structs.bodies import (
    RawBody,
    RawEvent,
    RawEventType,
    OwnerReference,
    ObjectReference,
    build_object_reference,
    build_owner_reference,
)
from kontrol._cogs.structs.deltas import (
    Delta,
    Deltas,
    DeltaType,
    DeletedFinalStateUnknown,
)
from kontrol._cogs.structs.hierarchies import (
    AlreadyOwnedError,
    append_owner_reference,
    remove_owner_reference,
    is_controlled_by,
)
from kontrol._cogs.structs.references import (
    Resource,
    ObjectKey,
    key_of,
    parse_key,
)
from kontrol._core.actions.loggers import (
    configure,
    LogFormat,
    ObjectLogger,
    LocalObjectLogger,
)
from kontrol._core.engines.posting import (
    event,
    info,
    warn,
    exception,
)
from kontrol._core.engines.reconciling import (
    Context,
    Dependent,
    FieldsDependent,
    PermanentError,
    Reconciler,
    Result,
    TemporaryError,
)
from kontrol._core.reactor.dispatching import (
    For,
    Owns,
    ResourceEventHandler,
    ResourceEventHandlerFuncs,
)
from kontrol._core.reactor.fifo import (
    DeltaFIFO,
)
from kontrol._core.reactor.indexing import (
    Indexer,
    by_namespace,
    by_controller_uid,
)
from kontrol._core.reactor.informers import (
    Informer,
    InformerFactory,
)
from kontrol._core.reactor.reflecting import (
    Reflector,
)
from kontrol._core.reactor.running import (
    Manager,
    spawn_tasks,
    run_tasks,
    operator,
    run,
)
from kontrol._core.reactor.workers import (
    Controller,
)
from kontrol._core.reactor.workqueue import (
    WorkQueue,
    RateLimiter,
    ItemExponentialFailureRateLimiter,
    BucketRateLimiter,
    MaxOfRateLimiter,
    default_rate_limiter,
)

__all__ = [
    'Flag',
    'configure', 'LogFormat',
    'login_with_service_account',
    'AccessError',
    'ConnectionInfo',
    'RemoteSource',
    'ChangeSource', 'Mutator', 'EventSink', 'EventType', 'WatchEvent',
    'APIError',
    'APIUnauthorizedError',
    'APIForbiddenError',
    'APINotFoundError',
    'APIConflictError',
    'APIGoneError',
    'APIServerError',
    'ResourceVersionTooOldError',
    'OperatorSettings',
    'SettingsError', 'load_settings',
    'Logger',
    'ObjectLogger',
    'LocalObjectLogger',
    'RawBody', 'RawEvent', 'RawEventType',
    'OwnerReference', 'ObjectReference',
    'build_object_reference', 'build_owner_reference',
    'append_owner_reference', 'remove_owner_reference', 'is_controlled_by',
    'AlreadyOwnedError',
    'Resource', 'ObjectKey', 'key_of', 'parse_key',
    'Delta', 'Deltas', 'DeltaType', 'DeletedFinalStateUnknown',
    'event', 'info', 'warn', 'exception',
    'Context', 'Dependent', 'FieldsDependent', 'Reconciler', 'Result',
    'PermanentError', 'TemporaryError',
    'For', 'Owns', 'ResourceEventHandler', 'ResourceEventHandlerFuncs',
    'DeltaFIFO', 'Indexer', 'by_namespace', 'by_controller_uid',
    'Informer', 'InformerFactory', 'Reflector',
    'Manager', 'Controller',
    'spawn_tasks', 'run_tasks', 'operator', 'run',
    'WorkQueue', 'RateLimiter',
    'ItemExponentialFailureRateLimiter',
    'BucketRateLimiter',
    'MaxOfRateLimiter',
    'default_rate_limiter',
]
