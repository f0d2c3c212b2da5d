"""
API errors of the source of truth.

The underlying client library (now, ``aiohttp``) can be replaced in the future,
and the in-memory sources do not use it at all. We cannot rely on embedding
its exceptions all over the code in the framework. Hence, we have our own
hierarchy of exceptions for API errors, raised by all kinds of sources.

Low-level errors, such as the network connectivity issues, SSL/HTTPS issues,
etc, are escalated from the client library as is, since they are related not
to the domain of the API, but rather to the networking and encryption.

Some selected reasons of API errors are made into their own classes,
so that they could be intercepted and handled in other places of the framework:

* Unauthorized & forbidden errors are fatal: the watching stops, the operator exits.
* "Gone" (a.k.a. "resource version too old") means that the listing must be redone.
* Conflicts are retryable: the whole reconciliation is redone on a fresh object.
* Not-found errors are expected in the deletion races: they mean "already converged".
* Server errors are transient and are retried with backoff.
"""
import asyncio
import collections.abc
import json
from collections.abc import Collection

import aiohttp
from typing_extensions import Literal, TypedDict


class RawStatusCause(TypedDict):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict, total=False):
    name: str
    uid: str
    retryAfterSeconds: int
    kind: str
    group: str
    causes: Collection[RawStatusCause]


class RawStatus(TypedDict, total=False):
    apiVersion: str
    kind: Literal["Status"]
    code: int
    status: Literal["Success", "Failure"]
    reason: str
    message: str
    details: RawStatusDetails


class APIError(Exception):

    def __init__(
            self,
            payload: RawStatus | None,
            *,
            status: int,
    ) -> None:
        message = payload.get('message') if payload else None
        super().__init__(message, payload)
        self._status = status
        self._payload = payload

    @property
    def status(self) -> int:
        return self._status

    @property
    def code(self) -> int | None:
        return self._payload.get('code') if self._payload else None

    @property
    def reason(self) -> str | None:
        return self._payload.get('reason') if self._payload else None

    @property
    def message(self) -> str | None:
        return self._payload.get('message') if self._payload else None

    @property
    def details(self) -> RawStatusDetails | None:
        return self._payload.get('details') if self._payload else None


class APIUnauthorizedError(APIError):
    pass


class APIForbiddenError(APIError):
    pass


class APINotFoundError(APIError):
    pass


class APIConflictError(APIError):

    @property
    def already_exists(self) -> bool:
        return self.reason == 'AlreadyExists'


class APIGoneError(APIError):
    pass


class APIServerError(APIError):
    pass


# The watch-streams' "410 Gone" means that the requested resource version is compacted away.
ResourceVersionTooOldError = APIGoneError

# Which errors are fatal for the watch-streams and the operator as a whole.
FATAL_ERRORS: tuple[type[BaseException], ...] = (
    APIUnauthorizedError,
    APIForbiddenError,
)

# Which errors are worth retrying with backoff (on top of the client's own retries).
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    APIServerError,
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
    ConnectionError,
)


def error_class(status: int) -> type[APIError]:
    return (
        APIUnauthorizedError if status == 401 else
        APIForbiddenError if status == 403 else
        APINotFoundError if status == 404 else
        APIConflictError if status == 409 else
        APIGoneError if status == 410 else
        APIServerError if status >= 500 else
        APIError
    )


def from_status(payload: RawStatus) -> APIError:
    """ Convert a status payload (e.g. from a watch-stream's ERROR event) to an error. """
    status = payload.get('code') or 500
    cls = error_class(status)
    return cls(payload, status=status)


async def check_response(
        response: aiohttp.ClientResponse,
) -> None:
    """
    Check for specialised API errors, and raise with extended information.
    """
    if response.status >= 400:

        # Read the response's body before it is closed by raise_for_status().
        payload: RawStatus | None
        try:
            payload = await response.json()
        except (json.JSONDecodeError, aiohttp.ContentTypeError, aiohttp.ClientConnectionError):
            payload = None

        # Better be safe: who knows which sensitive information can be dumped unless kind==Status.
        if not isinstance(payload, collections.abc.Mapping) or payload.get('kind') != 'Status':
            payload = None

        cls = error_class(response.status)

        # Raise the framework-specific error while keeping the original error in scope.
        # This call also closes the response's body, so it cannot be read afterwards.
        try:
            response.raise_for_status()
        except aiohttp.ClientResponseError as e:
            raise cls(payload, status=response.status) from e
