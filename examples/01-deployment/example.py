"""
An operator of CustomDeployments: every one of them is backed by a Deployment.

The Deployment's replicas follow the CustomDeployment's ``spec.replicas``;
the CustomDeployment's ``status.availableReplicas`` follows the Deployment's.
On deletion, the Deployment is torn down before the finalizer is released.

Run it in a cluster (with a service account)::

    kontrol run examples/01-deployment/example.py:make_manager --verbose
"""
from typing import Any

import kontrol

FINALIZER = 'apps.myorg.io/finalizer'

CUSTOM_DEPLOYMENTS = kontrol.Resource(
    'apps.myorg.io', 'v1alpha1', 'customdeployments',
    kind='CustomDeployment', subresources=frozenset({'status'}),
)
DEPLOYMENTS = kontrol.Resource(
    'apps', 'v1', 'deployments',
    kind='Deployment', subresources=frozenset({'status'}),
)


def build_deployment(parent: kontrol.RawBody) -> kontrol.RawBody:
    name = parent['metadata']['name']
    labels = {'app': name}
    return {
        'metadata': {
            'namespace': parent['metadata'].get('namespace'),
            'name': name,
            'labels': labels,
        },
        'spec': {
            'replicas': parent.get('spec', {}).get('replicas', 1),
            'selector': {'matchLabels': labels},
            'template': {
                'metadata': {'labels': labels},
                'spec': {'containers': [{'name': 'app', 'image': 'nginx:latest'}]},
            },
        },
    }


def build_status(parent: kontrol.RawBody, observed: dict[str, Any]) -> dict[str, Any]:
    deployment = observed.get('deployments') or {}
    return {'availableReplicas': deployment.get('status', {}).get('availableReplicas', 0)}


def make_manager(
        settings: kontrol.OperatorSettings,
        source: Any = None,
) -> kontrol.Manager:
    if source is None:
        source = kontrol.RemoteSource(kontrol.login_with_service_account(), settings=settings)

    reconciler = kontrol.Reconciler(
        CUSTOM_DEPLOYMENTS,
        mutator=source,
        settings=settings,
        finalizer=FINALIZER,
        status=build_status,
        dependents=[
            kontrol.FieldsDependent(
                DEPLOYMENTS,
                build=build_deployment,
                fields=[('spec', 'replicas')],
            ),
        ],
    )

    manager = kontrol.Manager(source, settings=settings)
    manager.add(kontrol.Controller(
        'customdeployments',
        reconcile=reconciler,
        settings=settings,
        for_=kontrol.For(CUSTOM_DEPLOYMENTS),
        owns=[kontrol.Owns(DEPLOYMENTS)],
    ))
    return manager
