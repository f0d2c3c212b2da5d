"""
The REST-based source of truth over aiohttp: listing, watching, and mutating.

The URLs, the list/watch protocol, and the status/event payloads follow
the conventions of the Kubernetes API: ``?watch=true&resourceVersion=...``
for the streams of newline-delimited JSON events, the ``/status`` subresource
for the statuses, the ``Status`` kind for the errors.
"""
import asyncio
import copy
import datetime
import logging
from collections.abc import AsyncIterator, Collection
from typing import Any

import aiohttp

from kontrol._cogs.clients import api, auth, errors
from kontrol._cogs.configs import configuration
from kontrol._cogs.structs import bodies, references

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1024
CUT_MESSAGE_INFIX = '...'

EVENTS = references.Resource('', 'v1', 'events', kind='Event')


class RemoteSource:
    """
    A source of truth behind an HTTP API, usually a cluster's API server.

    Usage::

        async with kontrol.RemoteSource(kontrol.login_with_service_account()) as source:
            manager = kontrol.Manager(source=source)
            ...

    The session is created lazily in the running event loop and closed on exit.
    """

    def __init__(
            self,
            info: auth.ConnectionInfo,
            *,
            settings: configuration.OperatorSettings | None = None,
            session: aiohttp.ClientSession | None = None,
    ) -> None:
        super().__init__()
        self._info = info
        self._session = session
        self._context: auth.APIContext | None = None
        self.settings = settings if settings is not None else configuration.OperatorSettings()

    async def __aenter__(self) -> "RemoteSource":
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    @property
    def context(self) -> auth.APIContext:
        if self._context is None:
            self._context = auth.APIContext(self._info, session=self._session)
        return self._context

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
            self._context = None

    async def list(
            self,
            resource: references.Resource,
            *,
            namespace: references.Namespace = None,
    ) -> tuple[Collection[bodies.RawBody], str | None]:
        rsp = await api.call(
            'get', resource.get_url(namespace=namespace),
            context=self.context, settings=self.settings, logger=logger,
        )

        items: list[bodies.RawBody] = []
        resource_version = rsp.get('metadata', {}).get('resourceVersion', None)
        for item in rsp.get('items', []):
            if 'kind' in rsp:
                item.setdefault('kind', rsp['kind'][:-4] if rsp['kind'][-4:] == 'List' else rsp['kind'])
            if 'apiVersion' in rsp:
                item.setdefault('apiVersion', rsp['apiVersion'])
            items.append(item)

        return items, resource_version

    async def watch(
            self,
            resource: references.Resource,
            *,
            namespace: references.Namespace = None,
            since: str | None = None,
    ) -> AsyncIterator[bodies.RawInput]:
        """
        Stream the raw events until the stream is closed server-side.

        The connection failures end the stream as a normal closure:
        the reflector re-lists the objects anyway. The API errors
        (e.g. 401/403/410 on the initial request) are escalated.
        """
        params: dict[str, str] = {'watch': 'true', 'allowWatchBookmarks': 'true'}
        if since is not None:
            params['resourceVersion'] = since
        if self.settings.watching.server_timeout is not None:
            params['timeoutSeconds'] = str(int(self.settings.watching.server_timeout))

        connect_timeout = (
            self.settings.watching.connect_timeout if self.settings.watching.connect_timeout is not None else
            self.settings.networking.connect_timeout if self.settings.networking.connect_timeout is not None else
            self.settings.networking.request_timeout
        )

        try:
            async for raw_input in api.stream(
                url=resource.get_url(namespace=namespace, params=params),
                context=self.context,
                settings=self.settings,
                logger=logger,
                timeout=aiohttp.ClientTimeout(
                    total=self.settings.watching.client_timeout,
                    sock_connect=connect_timeout,
                ),
            ):
                yield raw_input

        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError):
            pass

    async def get(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> bodies.RawBody | None:
        try:
            return await api.call(
                'get', resource.get_url(namespace=key.namespace, name=key.name),
                context=self.context, settings=self.settings, logger=logger,
            )
        except errors.APINotFoundError:
            return None

    async def create(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        namespace = body.get('metadata', {}).get('namespace') if resource.namespaced else None
        return await api.call(
            'post', resource.get_url(namespace=namespace),
            payload=body, context=self.context, settings=self.settings, logger=logger,
        )

    async def update(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        key = references.key_of(body)
        return await api.call(
            'put', resource.get_url(namespace=key.namespace, name=key.name),
            payload=body, context=self.context, settings=self.settings, logger=logger,
        )

    async def update_status(
            self,
            resource: references.Resource,
            body: bodies.RawBody,
    ) -> bodies.RawBody:
        key = references.key_of(body)
        return await api.call(
            'put', resource.get_url(namespace=key.namespace, name=key.name, subresource='status'),
            payload=body, context=self.context, settings=self.settings, logger=logger,
        )

    async def delete(
            self,
            resource: references.Resource,
            key: references.ObjectKey,
    ) -> None:
        await api.call(
            'delete', resource.get_url(namespace=key.namespace, name=key.name),
            payload={'propagationPolicy': 'Background'},
            context=self.context, settings=self.settings, logger=logger,
        )

    async def post_event(
            self,
            *,
            ref: bodies.ObjectReference,
            type: str,
            reason: str,
            message: str = '',
    ) -> None:
        """
        Issue an event for the object.

        Events are helpful but auxiliary: the failures to post them are logged,
        but never fail the reconciliation or the operator.
        """

        # Prevent "event explosion", when the events about events create other events.
        if ref.get('apiVersion') == 'v1' and ref.get('kind') == 'Event':
            return

        # For cluster-scoped objects, use the default namespace of the connection.
        namespace: str = ref.get('namespace') or self.context.default_namespace or 'default'
        full_ref: bodies.ObjectReference = copy.copy(ref)
        full_ref['namespace'] = namespace

        # Prevent a common case of event posting errors by shortening the message.
        if len(message) > MAX_MESSAGE_LENGTH:
            infix = CUT_MESSAGE_INFIX
            prefix = message[:MAX_MESSAGE_LENGTH // 2 - (len(infix) // 2)]
            suffix = message[-MAX_MESSAGE_LENGTH // 2 + (len(infix) - len(infix) // 2):]
            message = f'{prefix}{infix}{suffix}'

        now = datetime.datetime.now(datetime.timezone.utc)
        body = {
            'metadata': {
                'namespace': namespace,
                'generateName': self.settings.posting.event_name_prefix,
            },

            'action': 'Reconcile',
            'type': type,
            'reason': reason,
            'message': message,

            'reportingComponent': self.settings.posting.reporting_component,
            'source': {'component': self.settings.posting.reporting_component},

            'involvedObject': full_ref,

            'firstTimestamp': now.isoformat(),
            'lastTimestamp': now.isoformat(),
            'eventTime': now.isoformat(),
        }

        try:
            await api.call(
                'post', EVENTS.get_url(namespace=namespace),
                headers={'Content-Type': 'application/json'},
                payload=body, context=self.context, settings=self.settings, logger=logger,
            )
        except errors.APIError as e:
            logger.warning(f"Failed to post an event. Ignoring and continuing. "
                           f"Code: {e.code}. Message: {e.message}. Details: {e.details}. "
                           f"Event: type={type!r}, reason={reason!r}, message={message!r}.")
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            logger.warning(f"Failed to post an event. Ignoring and continuing. "
                           f"Error: {e!r}. "
                           f"Event: type={type!r}, reason={reason!r}, message={message!r}.")
