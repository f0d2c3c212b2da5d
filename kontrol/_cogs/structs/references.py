"""
References to resource kinds and to individual objects of those kinds.
"""
import dataclasses
import urllib.parse
from collections.abc import Iterator, Mapping
from typing import Any, NamedTuple

# A namespace of a namespaced object, or None for cluster-scoped objects and cluster-wide listings.
Namespace = str | None


@dataclasses.dataclass(frozen=True)
class Resource:
    """
    A reference to a very specific custom or built-in resource kind.

    It is used to form the API URLs. Generally, the API only needs
    an API group, an API version, and a plural name of the resource.
    The kind is remembered for building the owner references and events.
    """

    group: str
    """
    The resource's API group; e.g. ``"apps.myorg.io"``, ``"apps"``.
    For Core v1 API resources, an empty string: ``""``.
    """

    version: str
    """
    The resource's API version; e.g. ``"v1"``, ``"v1alpha1"``, etc.
    """

    plural: str
    """
    The resource's plural name; e.g. ``"deployments"``, ``"customdeployments"``.
    """

    namespaced: bool = True
    """
    Whether the resource is namespaced (``True``) or cluster-scoped (``False``).
    """

    kind: str | None = dataclasses.field(default=None, compare=False)
    """
    The resource's kind (as in YAML files); e.g. ``"Deployment"``.
    """

    subresources: frozenset[str] = dataclasses.field(default=frozenset(), compare=False)
    """
    The resource's subresources, if defined; e.g. ``{"status"}``.
    """

    def __repr__(self) -> str:
        return f'{self.plural}.{self.version}.{self.group}'.strip('.')

    def __iter__(self) -> Iterator[str]:
        return iter((self.group, self.version, self.plural))

    @property
    def api_version(self) -> str:
        return f'{self.group}/{self.version}' if self.group else self.version

    def get_url(
            self,
            *,
            server: str | None = None,
            namespace: Namespace = None,
            name: str | None = None,
            subresource: str | None = None,
            params: Mapping[str, str] | None = None,
    ) -> str:
        """
        Build a URL to be used with the API.

        If the namespace is not set, a cluster-wide URL is returned.
        If the name is not set, the URL for the resource list is returned.
        Params go to the query parameters (``?param1=value1&param2=value2...``).
        """
        if subresource is not None and name is None:
            raise ValueError("Subresources can be used only with specific resources by their name.")
        if not self.namespaced and namespace is not None:
            raise ValueError("Specific namespaces are not supported for cluster-scoped resources.")
        if self.namespaced and namespace is None and name is not None:
            raise ValueError("Specific namespaces are required for specific namespaced resources.")

        parts: list[str | None] = [
            '/api' if self.group == '' and self.version == 'v1' else '/apis',
            self.group,
            self.version,
            'namespaces' if self.namespaced and namespace is not None else None,
            namespace if self.namespaced and namespace is not None else None,
            self.plural,
            name,
            subresource,
        ]

        query = urllib.parse.urlencode(params, encoding='utf-8') if params else ''
        path = '/'.join([part for part in parts if part])
        url = path + ('?' if query else '') + query
        return url if server is None else server.rstrip('/') + '/' + url.lstrip('/')


class ObjectKey(NamedTuple):
    """
    An identity of an object within its resource kind.

    It is used for caching, queueing, and deduplication. The namespace is
    ``None`` for cluster-scoped objects. The string form is ``namespace/name``
    or ``name`` alone -- the same as used in logs and in the CLI tools.
    """
    namespace: Namespace
    name: str

    def __str__(self) -> str:
        return f'{self.namespace}/{self.name}' if self.namespace else self.name


def key_of(body: Mapping[str, Any]) -> ObjectKey:
    """ Extract the object's identity from its body. """
    metadata = body.get('metadata', {})
    name = metadata.get('name')
    if not name:
        raise ValueError(f"The object has no name and cannot be identified: {body!r}")
    return ObjectKey(namespace=metadata.get('namespace') or None, name=name)


def parse_key(value: str) -> ObjectKey:
    """ Parse the string form of a key (``namespace/name`` or ``name``). """
    namespace, sep, name = value.rpartition('/')
    if not name or (sep and not namespace):
        raise ValueError(f"Unparseable object key: {value!r}")
    return ObjectKey(namespace=namespace or None, name=name)
