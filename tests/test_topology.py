"""
Tests for the topology descriptor: which objects exist per scenario, where,
and in what order.
"""

import pytest

from conncheck.config import (
    FEATURE_HOST_PORT,
    FEATURE_INGRESS_CONTROLLER,
    FEATURE_NODE_WITHOUT_CILIUM,
    Features,
)
from conncheck.topology import (
    DST,
    SRC,
    PerfDeploymentNames,
    all_deployment_names,
    deployment_list,
    find_perf_zone,
    plan_topology,
)

from conftest import make_node


def keys(plan):
    return [obj.key for obj in plan]


def named(plan, kind, name, target=None):
    return [obj for obj in plan
            if obj.kind == kind and obj.name == name and (target is None or obj.target == target)]


SCENARIOS = {
    'multi-node': dict(),
    'single-node': dict(single_node=True),
    'multi-cluster': dict(multi_cluster='kind-cluster2'),
    'perf': dict(perf=True),
    'perf-host-net': dict(perf=True, perf_host_net=True),
    'perf-single-node': dict(perf=True, single_node=True),
}


def configure(params, **overrides):
    for key, value in overrides.items():
        setattr(params, key, value)
    return params


class TestPlanTopology:

    @pytest.mark.parametrize("scenario", sorted(SCENARIOS))
    def test_plan_is_deterministic(self, params, scenario):
        configure(params, **SCENARIOS[scenario])
        features = Features.from_names([FEATURE_NODE_WITHOUT_CILIUM, FEATURE_INGRESS_CONTROLLER])

        first = keys(plan_topology(params, features, zone='zone-a'))
        second = keys(plan_topology(params, features, zone='zone-a'))
        assert first == second
        assert len(first) == len(set(first))

    @pytest.mark.parametrize("scenario", sorted(SCENARIOS))
    def test_service_account_precedes_its_deployment(self, params, features, scenario):
        configure(params, **SCENARIOS[scenario])
        plan = plan_topology(params, features)

        assert plan[0].kind == 'Namespace'
        for i, obj in enumerate(plan):
            if obj.kind == 'Deployment':
                assert plan[i - 1].key == (obj.target, 'ServiceAccount', obj.name)

    def test_multi_node(self, params, features):
        plan = plan_topology(params, features)

        assert keys(plan) == [
            (SRC, 'Namespace', 'cilium-test'),
            (SRC, 'Service', 'echo-same-node'),
            (SRC, 'ConfigMap', 'coredns-configmap'),
            (SRC, 'ServiceAccount', 'echo-same-node'),
            (SRC, 'Deployment', 'echo-same-node'),
            (SRC, 'ServiceAccount', 'client'),
            (SRC, 'Deployment', 'client'),
            (SRC, 'ServiceAccount', 'client2'),
            (SRC, 'Deployment', 'client2'),
            (DST, 'Service', 'echo-other-node'),
            (DST, 'ServiceAccount', 'echo-other-node'),
            (DST, 'Deployment', 'echo-other-node'),
        ]

    def test_single_node_has_no_other_node_echo(self, params, features):
        params.single_node = True
        plan = plan_topology(params, features)

        assert not [obj for obj in plan if obj.name == 'echo-other-node']
        assert named(plan, 'Deployment', 'echo-same-node', SRC)

    def test_multi_cluster_places_other_node_on_destination(self, params, features):
        params.single_node = True
        params.multi_cluster = 'kind-cluster2'
        plan = plan_topology(params, features)

        assert named(plan, 'Namespace', 'cilium-test', DST)
        assert named(plan, 'ConfigMap', 'coredns-configmap', DST)
        assert named(plan, 'Deployment', 'echo-other-node', DST)
        assert not named(plan, 'Deployment', 'echo-other-node', SRC)

        # Global service on both sides
        src_svc = named(plan, 'Service', 'echo-other-node', SRC)[0].build()
        dst_svc = named(plan, 'Service', 'echo-other-node', DST)[0].build()
        assert src_svc.metadata.annotations['service.cilium.io/global'] == 'true'
        assert dst_svc.metadata.annotations['io.cilium/global-service'] == 'true'

    def test_same_node_service_is_never_global(self, params, features):
        params.multi_cluster = 'kind-cluster2'
        svc = named(plan_topology(params, features), 'Service', 'echo-same-node')[0].build()
        assert svc.metadata.annotations is None

    def test_configmap_precedes_echo_deployments(self, params, features):
        params.multi_cluster = 'kind-cluster2'
        plan = keys(plan_topology(params, features))

        for target in (SRC, DST):
            cm = plan.index((target, 'ConfigMap', 'coredns-configmap'))
            for name in ('echo-same-node', 'echo-other-node'):
                if (target, 'Deployment', name) in plan:
                    assert cm < plan.index((target, 'Deployment', name))

    def test_node_without_cilium(self, params):
        features = Features.from_names([FEATURE_NODE_WITHOUT_CILIUM])
        plan = plan_topology(params, features)

        ds = named(plan, 'DaemonSet', 'host-netns', DST)[0].build()
        assert ds.spec.template.spec.host_network is True
        assert ds.spec.template.spec.tolerations[0].operator == 'Exists'

        dep = named(plan, 'Deployment', 'echo-external-node', DST)[0].build()
        pod_spec = dep.spec.template.spec
        assert pod_spec.host_network is True
        assert pod_spec.node_selector == {'cilium.io/no-schedule': 'true'}
        assert pod_spec.containers[0].ports[0].host_port == 8080

    def test_node_without_cilium_needs_a_second_node(self, params):
        params.single_node = True
        plan = plan_topology(params, Features.from_names([FEATURE_NODE_WITHOUT_CILIUM]))
        assert not named(plan, 'DaemonSet', 'host-netns')
        assert not named(plan, 'Deployment', 'echo-external-node')

    def test_host_port_feature(self, params):
        plan = plan_topology(params, Features.from_names([FEATURE_HOST_PORT]))
        for name in ('echo-same-node', 'echo-other-node'):
            dep = named(plan, 'Deployment', name)[0].build()
            assert dep.spec.template.spec.containers[0].ports[0].host_port == 40000

        plain = plan_topology(params, Features())
        dep = named(plain, 'Deployment', 'echo-same-node')[0].build()
        assert dep.spec.template.spec.containers[0].ports[0].host_port is None

    def test_ingress_feature(self, params):
        plan = plan_topology(params, Features.from_names([FEATURE_INGRESS_CONTROLLER]))
        ingress = named(plan, 'Ingress', 'ingress-service', SRC)[0].build()

        assert ingress.spec.ingress_class_name == 'cilium'
        backend = ingress.spec.rules[0].http.paths[0].backend.service
        assert backend.name == 'echo-same-node'
        assert backend.port.number == 8080
        assert ingress.metadata.annotations['ingress.cilium.io/insecure-node-port'] == '31000'

    def test_perf(self, params, features):
        params.perf = True
        plan = plan_topology(params, features, zone='zone-b')

        assert keys(plan) == [
            (SRC, 'Namespace', 'cilium-test'),
            (SRC, 'ServiceAccount', 'perf-client'),
            (SRC, 'Deployment', 'perf-client'),
            (SRC, 'ServiceAccount', 'perf-server'),
            (SRC, 'Deployment', 'perf-server'),
            (SRC, 'ServiceAccount', 'perf-client-other-node'),
            (SRC, 'Deployment', 'perf-client-other-node'),
        ]
        server = named(plan, 'Deployment', 'perf-server')[0].build()
        affinity = server.spec.template.spec.affinity
        term = affinity.node_affinity.preferred_during_scheduling_ignored_during_execution[0]
        assert term.preference.match_expressions[0].values == ['zone-b']
        assert affinity.pod_affinity.required_during_scheduling_ignored_during_execution[0] \
            .label_selector.match_expressions[0].values == ['perf-client']

    def test_perf_host_net_suffix(self, params, features):
        params.perf = True
        params.perf_host_net = True
        plan = plan_topology(params, features)

        deployments = [obj for obj in plan if obj.kind == 'Deployment']
        assert [d.name for d in deployments] == [
            'perf-client-host-net', 'perf-server-host-net', 'perf-client-other-node-host-net',
        ]
        assert all(d.build().spec.template.spec.host_network for d in deployments)

    def test_perf_node_selector(self, params, features):
        params.perf = True
        params.node_selector = {'perf': 'true'}
        dep = named(plan_topology(params, features), 'Deployment', 'perf-client')[0].build()
        assert dep.spec.template.spec.node_selector == {'perf': 'true'}


class TestDeploymentList:

    def test_multi_node(self, params, features):
        assert deployment_list(params, features) == (
            ['client', 'client2', 'echo-same-node'], ['echo-other-node'])

    def test_single_node(self, params, features):
        params.single_node = True
        assert deployment_list(params, features) == (['client', 'client2', 'echo-same-node'], [])

    def test_external_node(self, params):
        features = Features.from_names([FEATURE_NODE_WITHOUT_CILIUM])
        assert deployment_list(params, features)[1] == ['echo-other-node', 'echo-external-node']

    def test_perf_single_node(self, params, features):
        params.perf = True
        params.single_node = True
        assert deployment_list(params, features) == (['perf-client', 'perf-server'], [])

    def test_matches_planned_deployments(self, params):
        features = Features.from_names([FEATURE_NODE_WITHOUT_CILIUM])
        src, dst = deployment_list(params, features)
        plan = plan_topology(params, features)

        assert sorted(src) == sorted(o.name for o in plan if o.kind == 'Deployment' and o.target == SRC)
        assert sorted(dst) == sorted(o.name for o in plan if o.kind == 'Deployment' and o.target == DST)


def test_all_deployment_names_follow_perf_naming(params):
    params.perf_host_net = True
    names = all_deployment_names(params)
    assert 'perf-server-host-net' in names
    assert 'perf-server' not in names
    assert 'echo-external-node' in names


def test_perf_deployment_names(params):
    assert PerfDeploymentNames.for_params(params).client_across == 'perf-client-other-node'


class TestFindPerfZone:

    def test_prefers_zone_with_two_nodes(self):
        nodes = [make_node('n1', 'a'), make_node('n2', 'b'), make_node('n3', 'b')]
        assert find_perf_zone(nodes) == ('b', True)

    def test_single_node_zones(self):
        nodes = [make_node('n1', 'a'), make_node('n2', 'b')]
        assert find_perf_zone(nodes) == ('b', False)
