"""
Topology descriptor: which objects a scenario needs, on which cluster, in
which order.

``plan_topology`` is deterministic for identical parameters. The provisioner
relies on that to re-attach to a partially created topology.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Tuple

from kubernetes import client

from . import manifests
from .config import (
    Config,
    FEATURE_HOST_PORT,
    FEATURE_INGRESS_CONTROLLER,
    FEATURE_NODE_WITHOUT_CILIUM,
    Features,
)
from .k8s import (
    KIND_CONFIGMAP,
    KIND_DAEMONSET,
    KIND_DEPLOYMENT,
    KIND_INGRESS,
    KIND_NAMESPACE,
    KIND_SERVICE,
    KIND_SERVICE_ACCOUNT,
)

SRC = 'src'
DST = 'dst'

CLIENT_DEPLOYMENT_NAME = 'client'
CLIENT2_DEPLOYMENT_NAME = 'client2'
ECHO_SAME_NODE_DEPLOYMENT_NAME = 'echo-same-node'
ECHO_OTHER_NODE_DEPLOYMENT_NAME = 'echo-other-node'
ECHO_EXTERNAL_NODE_DEPLOYMENT_NAME = 'echo-external-node'
HOST_NETNS_DEPLOYMENT_NAME = 'host-netns'

PERF_CLIENT_DEPLOYMENT_NAME = 'perf-client'
PERF_CLIENT_ACROSS_DEPLOYMENT_NAME = 'perf-client-other-node'
PERF_SERVER_DEPLOYMENT_NAME = 'perf-server'
PERF_HOST_NET_NAMING_SUFFIX = '-host-net'

KIND_ECHO = 'echo'
KIND_ECHO_EXTERNAL_NODE = 'echo-external-node'
KIND_CLIENT = 'client'
KIND_PERF = 'perf'
KIND_HOST_NETNS = 'host-netns'

ECHO_PORT = 8080
ECHO_SERVER_HOST_PORT = 40000
PERF_SERVER_PORT = 5201

SERVICE_LABELS = {'kind': KIND_ECHO}

SLEEP_FOREVER_ASH = ["/bin/ash", "-c", "sleep 10000000"]
SLEEP_FOREVER_BASH = ["/bin/bash", "-c", "sleep 10000000"]


@dataclass(frozen=True)
class PerfDeploymentNames:
    """Perf deployment names; host-network runs get their own suffix so the
    two variants can coexist in one namespace."""
    client: str
    client_across: str
    server: str

    @classmethod
    def for_params(cls, params: Config) -> 'PerfDeploymentNames':
        suffix = PERF_HOST_NET_NAMING_SUFFIX if params.perf_host_net else ''
        return cls(
            client=PERF_CLIENT_DEPLOYMENT_NAME + suffix,
            client_across=PERF_CLIENT_ACROSS_DEPLOYMENT_NAME + suffix,
            server=PERF_SERVER_DEPLOYMENT_NAME + suffix,
        )


@dataclass(frozen=True)
class TopologyObject:
    """One object to ensure on the ``target`` cluster (``src`` or ``dst``)"""
    target: str
    kind: str
    name: str
    factory: Callable[[], object]

    def build(self):
        return self.factory()

    @property
    def key(self) -> Tuple[str, str, str]:
        return self.target, self.kind, self.name


def find_perf_zone(nodes: Iterable[client.V1Node]) -> Tuple[str, bool]:
    """Pick a zone for the perf pods.

    The first zone seen on a second node wins. Otherwise the last zone seen
    is returned and the second element is False so callers can warn that
    every zone holds a single node.
    """
    seen = set()
    last_zone = ''
    for node in nodes:
        labels = node.metadata.labels or {}
        zone = labels.get(manifests.LABEL_TOPOLOGY_ZONE, '')
        if zone in seen:
            return zone, True
        seen.add(zone)
        last_zone = zone
    return last_zone, False


def _with_service_account(target: str, deployment: str, factory) -> List[TopologyObject]:
    return [
        TopologyObject(target, KIND_SERVICE_ACCOUNT, deployment,
                       lambda: manifests.new_service_account(deployment)),
        TopologyObject(target, KIND_DEPLOYMENT, deployment, factory),
    ]


def _echo_service(name: str, global_service: bool):
    annotations = manifests.GLOBAL_SERVICE_ANNOTATIONS if global_service else None
    return lambda: manifests.new_service(name, {'name': name}, SERVICE_LABELS, "http", ECHO_PORT,
                                         annotations=annotations)


def _plan_perf(params: Config, zone: str) -> List[TopologyObject]:
    nm = PerfDeploymentNames.for_params(params)

    def perf_client():
        return manifests.new_deployment(manifests.DeploymentParameters(
            name=nm.client,
            kind=KIND_PERF,
            named_port="http-80",
            port=80,
            image=params.performance_image,
            labels={"client": "role"},
            command=SLEEP_FOREVER_BASH,
            affinity=client.V1Affinity(node_affinity=manifests.preferred_zone_affinity(zone)),
            node_selector=params.node_selector,
            host_network=params.perf_host_net,
        ))

    def perf_server():
        return manifests.new_deployment(manifests.DeploymentParameters(
            name=nm.server,
            kind=KIND_PERF,
            labels={"server": "role"},
            port=5001,
            image=params.performance_image,
            command=["/bin/bash", "-c", "netserver;sleep 10000000"],
            affinity=client.V1Affinity(
                node_affinity=manifests.preferred_zone_affinity(zone),
                pod_affinity=client.V1PodAffinity(
                    required_during_scheduling_ignored_during_execution=[
                        manifests.required_pod_affinity_term(nm.client)
                    ]
                ),
            ),
            node_selector=params.node_selector,
            host_network=params.perf_host_net,
        ))

    def perf_client_across():
        return manifests.new_deployment(manifests.DeploymentParameters(
            name=nm.client_across,
            kind=KIND_PERF,
            port=5001,
            labels={"client": "role"},
            image=params.performance_image,
            command=SLEEP_FOREVER_BASH,
            affinity=client.V1Affinity(
                node_affinity=manifests.preferred_zone_affinity(zone),
                pod_anti_affinity=client.V1PodAntiAffinity(
                    preferred_during_scheduling_ignored_during_execution=[
                        client.V1WeightedPodAffinityTerm(
                            weight=100,
                            pod_affinity_term=manifests.required_pod_affinity_term(nm.client)
                        )
                    ]
                ),
            ),
            node_selector=params.node_selector,
            host_network=params.perf_host_net,
        ))

    plan = _with_service_account(SRC, nm.client, perf_client)
    plan += _with_service_account(SRC, nm.server, perf_server)
    if not params.single_node:
        plan += _with_service_account(SRC, nm.client_across, perf_client_across)
    return plan


def _plan_normal(params: Config, features: Features) -> List[TopologyObject]:
    multi_cluster = params.is_multi_cluster
    host_port = ECHO_SERVER_HOST_PORT if features.enabled(FEATURE_HOST_PORT) else 0
    plan = []

    plan.append(TopologyObject(SRC, KIND_SERVICE, ECHO_SAME_NODE_DEPLOYMENT_NAME,
                               _echo_service(ECHO_SAME_NODE_DEPLOYMENT_NAME, False)))
    if multi_cluster:
        plan.append(TopologyObject(SRC, KIND_SERVICE, ECHO_OTHER_NODE_DEPLOYMENT_NAME,
                                   _echo_service(ECHO_OTHER_NODE_DEPLOYMENT_NAME, True)))

    plan.append(TopologyObject(SRC, KIND_CONFIGMAP, manifests.COREDNS_CONFIGMAP_NAME,
                               manifests.new_coredns_configmap))
    if multi_cluster:
        plan.append(TopologyObject(DST, KIND_CONFIGMAP, manifests.COREDNS_CONFIGMAP_NAME,
                                   manifests.new_coredns_configmap))

    def echo_same_node():
        return manifests.new_deployment_with_dns_test_server(manifests.DeploymentParameters(
            name=ECHO_SAME_NODE_DEPLOYMENT_NAME,
            kind=KIND_ECHO,
            port=ECHO_PORT,
            named_port="http-8080",
            host_port=host_port,
            image=params.json_mock_image,
            labels={"other": "echo"},
            affinity=manifests.co_located_with(CLIENT_DEPLOYMENT_NAME),
            readiness_probe=manifests.new_local_readiness_probe(ECHO_PORT, "/"),
        ), params.dns_test_server_image)

    def client_deployment():
        return manifests.new_deployment(manifests.DeploymentParameters(
            name=CLIENT_DEPLOYMENT_NAME,
            kind=KIND_CLIENT,
            named_port="http-8080",
            port=8080,
            image=params.curl_image,
            command=SLEEP_FOREVER_ASH,
            node_selector=params.node_selector,
        ))

    def client2_deployment():
        return manifests.new_deployment(manifests.DeploymentParameters(
            name=CLIENT2_DEPLOYMENT_NAME,
            kind=KIND_CLIENT,
            named_port="http-8080",
            port=8080,
            image=params.curl_image,
            command=SLEEP_FOREVER_ASH,
            labels={"other": "client"},
            affinity=manifests.co_located_with(CLIENT_DEPLOYMENT_NAME),
            node_selector=params.node_selector,
        ))

    plan += _with_service_account(SRC, ECHO_SAME_NODE_DEPLOYMENT_NAME, echo_same_node)
    plan += _with_service_account(SRC, CLIENT_DEPLOYMENT_NAME, client_deployment)
    plan += _with_service_account(SRC, CLIENT2_DEPLOYMENT_NAME, client2_deployment)

    if params.spans_nodes:
        def echo_other_node():
            return manifests.new_deployment_with_dns_test_server(manifests.DeploymentParameters(
                name=ECHO_OTHER_NODE_DEPLOYMENT_NAME,
                kind=KIND_ECHO,
                named_port="http-8080",
                port=ECHO_PORT,
                host_port=host_port,
                image=params.json_mock_image,
                labels={"first": "echo"},
                affinity=manifests.separated_from(CLIENT_DEPLOYMENT_NAME),
                node_selector=params.node_selector,
                readiness_probe=manifests.new_local_readiness_probe(ECHO_PORT, "/"),
            ), params.dns_test_server_image)

        plan.append(TopologyObject(DST, KIND_SERVICE, ECHO_OTHER_NODE_DEPLOYMENT_NAME,
                                   _echo_service(ECHO_OTHER_NODE_DEPLOYMENT_NAME, multi_cluster)))
        plan += _with_service_account(DST, ECHO_OTHER_NODE_DEPLOYMENT_NAME, echo_other_node)

        if features.enabled(FEATURE_NODE_WITHOUT_CILIUM):
            def host_netns():
                return manifests.new_daemonset(manifests.DaemonSetParameters(
                    name=HOST_NETNS_DEPLOYMENT_NAME,
                    kind=KIND_HOST_NETNS,
                    image=params.curl_image,
                    port=8080,
                    labels={"other": "host-netns"},
                    command=SLEEP_FOREVER_ASH,
                    host_network=True,
                    tolerations=manifests.tolerate_all(),
                ))

            def echo_external_node():
                return manifests.new_deployment(manifests.DeploymentParameters(
                    name=ECHO_EXTERNAL_NODE_DEPLOYMENT_NAME,
                    kind=KIND_ECHO_EXTERNAL_NODE,
                    port=ECHO_PORT,
                    named_port="http-8080",
                    host_port=8080,
                    image=params.json_mock_image,
                    labels={"external": "echo"},
                    node_selector={"cilium.io/no-schedule": "true"},
                    readiness_probe=manifests.new_local_readiness_probe(ECHO_PORT, "/"),
                    host_network=True,
                    tolerations=manifests.tolerate_all(),
                ))

            plan.append(TopologyObject(DST, KIND_DAEMONSET, HOST_NETNS_DEPLOYMENT_NAME, host_netns))
            plan += _with_service_account(DST, ECHO_EXTERNAL_NODE_DEPLOYMENT_NAME, echo_external_node)

    if features.enabled(FEATURE_INGRESS_CONTROLLER):
        plan.append(TopologyObject(SRC, KIND_INGRESS, manifests.INGRESS_NAME,
                                   lambda: manifests.new_ingress(ECHO_SAME_NODE_DEPLOYMENT_NAME, ECHO_PORT)))

    return plan


def plan_topology(params: Config, features: Features, zone: str = '') -> List[TopologyObject]:
    """Ordered list of objects the scenario needs.

    Namespaces come first, a ServiceAccount always directly precedes the
    Deployment that uses it, and the CoreDNS ConfigMap precedes the echo
    deployments that mount it.
    """
    plan = [TopologyObject(SRC, KIND_NAMESPACE, params.test_namespace,
                           lambda: manifests.new_namespace(params.test_namespace))]
    if params.perf:
        return plan + _plan_perf(params, zone)

    if params.is_multi_cluster:
        plan.append(TopologyObject(DST, KIND_NAMESPACE, params.test_namespace,
                                   lambda: manifests.new_namespace(params.test_namespace)))
    return plan + _plan_normal(params, features)


def deployment_list(params: Config, features: Features) -> Tuple[List[str], List[str]]:
    """Deployments whose readiness is awaited on the src and dst clusters"""
    if not params.perf:
        src = [CLIENT_DEPLOYMENT_NAME, CLIENT2_DEPLOYMENT_NAME, ECHO_SAME_NODE_DEPLOYMENT_NAME]
    else:
        nm = PerfDeploymentNames.for_params(params)
        src = [nm.client, nm.server]
        if not params.single_node:
            src.append(nm.client_across)

    dst = []
    if params.spans_nodes and not params.perf:
        dst.append(ECHO_OTHER_NODE_DEPLOYMENT_NAME)
        if features.enabled(FEATURE_NODE_WITHOUT_CILIUM):
            dst.append(ECHO_EXTERNAL_NODE_DEPLOYMENT_NAME)

    return src, dst


def all_deployment_names(params: Config) -> List[str]:
    """Every deployment name the provisioner may have created under this naming"""
    names = [
        ECHO_SAME_NODE_DEPLOYMENT_NAME,
        ECHO_OTHER_NODE_DEPLOYMENT_NAME,
        CLIENT_DEPLOYMENT_NAME,
        CLIENT2_DEPLOYMENT_NAME,
        ECHO_EXTERNAL_NODE_DEPLOYMENT_NAME,
    ]
    nm = PerfDeploymentNames.for_params(params)
    return names + [nm.client, nm.server, nm.client_across]
