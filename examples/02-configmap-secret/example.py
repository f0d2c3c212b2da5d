"""
A controller that mirrors the annotated ConfigMaps into Secrets.

Every ConfigMap with the ``simple-controller/sync-to-secret`` annotation
gets a Secret named ``<configmap>-synced`` with the same data, owned by
the ConfigMap. When the ConfigMap is gone, its Secret is deleted too,
even if the garbage collector has not done this yet.

Run it in a cluster (with a service account)::

    kontrol run examples/02-configmap-secret/example.py:make_manager --verbose
"""
import base64
import logging
from collections.abc import Mapping
from typing import Any

import kontrol

SYNC_ANNOTATION = 'simple-controller/sync-to-secret'
SECRET_SUFFIX = '-synced'

CONFIGMAPS = kontrol.Resource('', 'v1', 'configmaps', kind='ConfigMap')
SECRETS = kontrol.Resource('', 'v1', 'secrets', kind='Secret')

logger = logging.getLogger(__name__)


def is_synced(body: Mapping[str, Any]) -> bool:
    return SYNC_ANNOTATION in (body.get('metadata', {}).get('annotations') or {})


def secret_key_of(key: kontrol.ObjectKey) -> kontrol.ObjectKey:
    return kontrol.ObjectKey(key.namespace, key.name + SECRET_SUFFIX)


def build_secret(configmap: kontrol.RawBody) -> kontrol.RawBody:
    # The data is base64-encoded as the API returns it, so that the comparisons are stable.
    name = configmap['metadata']['name']
    data = configmap.get('data') or {}
    secret: kontrol.RawBody = {
        'metadata': {
            'namespace': configmap['metadata'].get('namespace'),
            'name': name + SECRET_SUFFIX,
            'labels': {
                'app.kubernetes.io/managed-by': 'simple-controller',
                'app.kubernetes.io/source': name,
            },
        },
        'type': 'Opaque',
        'data': {k: base64.b64encode(v.encode('utf-8')).decode('ascii') for k, v in data.items()},
    }
    kontrol.append_owner_reference(secret, configmap)
    return secret


class ConfigMapSyncer:
    """ Reconciles one ConfigMap's key into its Secret. """

    def __init__(self, mutator: kontrol.Mutator) -> None:
        super().__init__()
        self.mutator = mutator

    async def __call__(
            self,
            key: kontrol.ObjectKey,
            *,
            caches: Mapping[kontrol.Resource, kontrol.Indexer],
            settings: kontrol.OperatorSettings,
            **_: Any,
    ) -> kontrol.Result | None:
        logger.debug(f"Reconciling the ConfigMap {key}.")
        configmap = caches[CONFIGMAPS].get(key)
        secret_key = secret_key_of(key)
        if configmap is None:
            logger.info(f"ConfigMap {key} is deleted; cleaning up the Secret {secret_key}.")
            try:
                await self.mutator.delete(SECRETS, secret_key)
            except kontrol.APINotFoundError:
                pass
            return None

        if not is_synced(configmap):
            logger.debug(f"ConfigMap {key} has no sync annotation; skipping.")
            return None

        objlogger = kontrol.LocalObjectLogger(body=configmap, settings=settings)
        desired = build_secret(configmap)
        existing = caches[SECRETS].get(secret_key)
        if existing is None:
            objlogger.info(f"Creating the Secret {secret_key}.")
            await self.mutator.create(SECRETS, desired)
        elif (existing.get('data') != desired['data'] or
              existing.get('metadata', {}).get('labels') != desired['metadata']['labels']):
            objlogger.info(f"Updating the Secret {secret_key}.")
            updated = dict(existing)
            updated['data'] = desired['data']
            updated['metadata'] = dict(existing['metadata'], labels=desired['metadata']['labels'])
            await self.mutator.update(SECRETS, updated)
        return None


def make_manager(
        settings: kontrol.OperatorSettings,
        source: Any = None,
        namespace: str | None = None,
) -> kontrol.Manager:
    if source is None:
        source = kontrol.RemoteSource(kontrol.login_with_service_account(), settings=settings)

    manager = kontrol.Manager(source, settings=settings)
    manager.add(kontrol.Controller(
        'configmap-secret-sync',
        reconcile=ConfigMapSyncer(source),
        settings=settings,
        for_=kontrol.For(CONFIGMAPS, namespace, predicate=is_synced),
        owns=[kontrol.Owns(SECRETS, namespace)],
    ))
    return manager
