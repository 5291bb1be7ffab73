import pytest

from conncheck.connectivity import ConnectivityTest
from conncheck.errors import UnexpectedCountError
from conncheck.log import ConsoleLog
from conncheck.manifests import new_namespace

from conftest import healthy_cluster


@pytest.mark.asyncio
async def test_force_deploy_recreates_topology(params, features, clients, cluster, log):
    params.force_deploy = True
    healthy_cluster(cluster)
    cluster.objects[('Namespace', 'cilium-test')] = new_namespace('cilium-test')
    cluster.objects[('Deployment', 'client')] = object()

    await ConnectivityTest(params, features, clients, log).setup()

    assert ('Deployment', 'client') in cluster.deleted
    assert cluster.deleted[-1] == ('Namespace', 'cilium-test')
    assert cluster.created[0] == ('Namespace', 'cilium-test')
    assert ('Deployment', 'client') in cluster.created


@pytest.mark.asyncio
async def test_run_cleans_up_on_completion(params, features, clients, cluster, log):
    params.cleanup_on_completion = True
    healthy_cluster(cluster)

    inventory = await ConnectivityTest(params, features, clients, log).run()

    assert len(inventory.client_pods) == 2
    assert cluster.objects == {}


@pytest.mark.asyncio
async def test_run_keeps_topology_by_default(params, features, clients, cluster, log):
    healthy_cluster(cluster)

    await ConnectivityTest(params, features, clients, log).run()
    assert ('Namespace', 'cilium-test') in cluster.objects


@pytest.mark.asyncio
async def test_run_propagates_failure(params, features, clients, cluster, log):
    params.cleanup_on_completion = True
    healthy_cluster(cluster)
    cluster.pods = [p for p in cluster.pods if p.metadata.name != 'echo-same-node-6c4f']

    with pytest.raises(UnexpectedCountError):
        await ConnectivityTest(params, features, clients, log).run()
    assert ('Namespace', 'cilium-test') in cluster.objects


def test_console_log_by_default(params, features, clients):
    assert isinstance(ConnectivityTest(params, features, clients).log, ConsoleLog)
