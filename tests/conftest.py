"""
Shared fixtures for the conncheck tests.

FakeCluster stands in for K8sClient: objects live in a dict keyed by
(kind, name), missing objects raise 404 and duplicates raise 409 the way
the API server does. Pods and services are added by the test, playing the
part of the controllers.
"""

import json
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from conncheck import teardown, validate
from conncheck.config import Config, Features
from conncheck.errors import NotReadyError
from conncheck.k8s import ClusterClients
from conncheck.log import ConsoleLog


def not_found(what: str = '') -> ApiException:
    return ApiException(status=404, reason=f"Not Found {what}".strip())


def _matches(labels: Dict[str, str], selector: str) -> bool:
    if not selector:
        return True
    for term in selector.split(','):
        key, value = term.split('=', 1)
        if labels.get(key) != value:
            return False
    return True


class FakeCluster:
    """In-memory object store with the K8sClient surface"""

    def __init__(self, cluster_name: str = 'kind-test'):
        self.cluster_name = cluster_name
        self.objects: Dict[Tuple[str, str], object] = {}
        self.pods: List[client.V1Pod] = []
        self.services: List[client.V1Service] = []
        self.nodes: List[client.V1Node] = []
        self.external_workloads: List[dict] = []
        self.external_workloads_error: Optional[ApiException] = None

        self.created: List[Tuple[str, str]] = []
        self.deleted: List[Tuple[str, str]] = []
        self.get_errors: Dict[Tuple[str, str], ApiException] = {}
        self.delete_rejections: Dict[Tuple[str, str], int] = {}
        self.unready: set = set()
        self.missing_endpoints: set = set()

        self.exec_calls: List[Tuple[str, str, List[str]]] = []
        self.exec_handler: Callable[[str, str, List[str]], str] = lambda pod, container, command: ''

    # Object store

    async def get_object(self, kind, namespace, name):
        if (kind, name) in self.get_errors:
            raise self.get_errors[(kind, name)]
        try:
            return self.objects[(kind, name)]
        except KeyError:
            raise not_found(f"{kind} {name}") from None

    async def create_object(self, kind, namespace, body):
        key = (kind, body.metadata.name)
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[key] = body
        self.created.append(key)
        return body

    async def delete_object(self, kind, namespace, name):
        key = (kind, name)
        if self.delete_rejections.get(key, 0) > 0:
            self.delete_rejections[key] -= 1
            raise ApiException(status=403, reason="Forbidden by admission webhook")
        if key not in self.objects:
            raise not_found(f"{kind} {name}")
        del self.objects[key]
        self.deleted.append(key)

    # Listing

    async def list_pods(self, namespace, label_selector=''):
        return [p for p in self.pods
                if p.metadata.namespace == namespace and _matches(p.metadata.labels or {}, label_selector)]

    async def list_services(self, namespace, label_selector=''):
        return [s for s in self.services
                if s.metadata.namespace == namespace and _matches(s.metadata.labels or {}, label_selector)]

    async def list_nodes(self):
        return list(self.nodes)

    async def list_cilium_external_workloads(self):
        if self.external_workloads_error is not None:
            raise self.external_workloads_error
        return list(self.external_workloads)

    # Readiness

    async def get_cilium_endpoint(self, namespace, name):
        if name in self.missing_endpoints or not any(p.metadata.name == name for p in self.pods):
            raise not_found(f"ciliumendpoint {name}")
        return {'metadata': {'name': name, 'namespace': namespace}}

    async def check_deployment_status(self, namespace, name):
        if ('Deployment', name) not in self.objects:
            raise not_found(f"deployment {name}")
        if name in self.unready:
            raise NotReadyError(f"deployment {name} is not ready")

    async def exec_in_pod(self, namespace, pod, container, command, timeout=None):
        self.exec_calls.append((pod, container, list(command)))
        return self.exec_handler(pod, container, list(command))


# older generated models spell the field pod_i_ps
POD_IPS_FIELD = 'pod_i_ps' if 'pod_i_ps' in getattr(client.V1PodStatus, 'attribute_map', {}) else 'pod_ips'


def make_pod(name: str, labels: Dict[str, str], ip: str, namespace: str = 'cilium-test',
             host_ip: str = '', node_name: str = '', host_network: bool = False,
             ips: Optional[List[str]] = None) -> client.V1Pod:
    if ips is None:
        ips = [ip] if ip else []
    return client.V1Pod(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=dict(labels)),
        spec=client.V1PodSpec(containers=[], node_name=node_name or None, host_network=host_network),
        status=client.V1PodStatus(
            pod_ip=ip,
            **{POD_IPS_FIELD: [client.V1PodIP(ip=i) for i in ips]},
            host_ip=host_ip or None,
        ),
    )


def make_service(name: str, cluster_ip: str, node_ports=(), labels: Optional[Dict[str, str]] = None,
                 namespace: str = 'cilium-test', type: str = 'NodePort',
                 lb_ip: Optional[str] = None) -> client.V1Service:
    ports = [client.V1ServicePort(name='http', port=8080, node_port=np) for np in node_ports] or \
        [client.V1ServicePort(name='http', port=8080)]
    status = None
    if lb_ip is not None:
        status = client.V1ServiceStatus(load_balancer=client.V1LoadBalancerStatus(
            ingress=[client.V1LoadBalancerIngress(ip=lb_ip)]))
    return client.V1Service(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace,
                                     labels=dict(labels if labels is not None else {'kind': 'echo'})),
        spec=client.V1ServiceSpec(type=type, cluster_ip=cluster_ip, ports=ports),
        status=status,
    )


def make_node(name: str, zone: str) -> client.V1Node:
    return client.V1Node(metadata=client.V1ObjectMeta(
        name=name, labels={'topology.kubernetes.io/zone': zone}))


def ipcache_dump(ips: List[str]) -> str:
    entries = {}
    for n, ip in enumerate(ips):
        prefix = f"{ip}/128" if ':' in ip else f"{ip}/32"
        entries[prefix] = [f"identity={1000 + n} encryptkey=0 tunnelendpoint=0.0.0.0"]
    return json.dumps(entries)


NSLOOKUP_HEADER = "Server:\t\t10.96.0.10\r\nAddress:\t10.96.0.10:53\r\n\r\n"


def nslookup_answer(name, ip):
    return NSLOOKUP_HEADER + f"Name:\t{name}.cilium-test.svc.cluster.local\r\nAddress: {ip}\r\n"


class HealthyDataPlane:
    """Exec handler answering every probe the way a converged cluster would"""

    def __init__(self, service_ips, pod_ips):
        self.service_ips = dict(service_ips)
        self.pod_ips = list(pod_ips)

    def __call__(self, pod, container, command):
        if command[0] == 'nslookup' and len(command) == 2 and command[1] in self.service_ips:
            return nslookup_answer(command[1], self.service_ips[command[1]])
        if command[0] in ('nslookup', 'nc'):
            return ''
        if command[:3] == ['cilium', 'bpf', 'ipcache']:
            return ipcache_dump(self.pod_ips)
        raise AssertionError(f"unexpected command {command}")


def add_clients(cluster):
    cluster.pods += [
        make_pod('client-7d9b', {'name': 'client', 'kind': 'client'}, '10.0.0.11', node_name='n1'),
        make_pod('client2-5f8c', {'name': 'client2', 'kind': 'client', 'other': 'client'}, '10.0.0.12',
                 node_name='n1'),
    ]


def add_agents(cluster, *host_ips, prefix='cilium'):
    for n, host_ip in enumerate(host_ips):
        cluster.pods.append(make_pod(f'{prefix}-{n}', {'k8s-app': 'cilium'}, host_ip, namespace='kube-system',
                                     host_ip=host_ip, node_name=f'n{n + 1}'))


def healthy_cluster(cluster):
    """Single cluster, two nodes, everything converged"""
    add_clients(cluster)
    cluster.pods += [
        make_pod('echo-same-node-6c4f', {'name': 'echo-same-node', 'kind': 'echo'}, '10.0.0.21', node_name='n1'),
        make_pod('echo-other-node-8b2a', {'name': 'echo-other-node', 'kind': 'echo'}, '10.0.1.22',
                 node_name='n2'),
    ]
    add_agents(cluster, '172.18.0.2', '172.18.0.3')
    cluster.services += [
        make_service('echo-same-node', '10.96.10.1', node_ports=(31500,)),
        make_service('echo-other-node', '10.96.10.2', node_ports=(31501,)),
    ]
    cluster.exec_handler = HealthyDataPlane(
        {'echo-same-node': '10.96.10.1', 'echo-other-node': '10.96.10.2'},
        ['10.0.0.11', '10.0.0.12', '10.0.0.21', '10.0.1.22'],
    )


@pytest.fixture
def params():
    cfg = Config()
    cfg.test_namespace = 'cilium-test'
    cfg.agent_namespace = 'kube-system'
    cfg.multi_cluster = ''
    cfg.perf = False
    cfg.perf_host_net = False
    cfg.single_node = False
    cfg.node_selector = {}
    cfg.force_deploy = False
    cfg.skip_ipcache_check = False
    cfg.cleanup_on_completion = False
    cfg.enabled_features = []
    cfg.pod_ready_timeout = 1.0
    cfg.service_ready_timeout = 0.5
    cfg.cilium_endpoint_timeout = 1.0
    cfg.ipcache_timeout = 0.5
    return cfg


@pytest.fixture
def features():
    return Features()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clients(cluster):
    return ClusterClients(cluster)


@pytest.fixture
def log():
    return ConsoleLog()


@pytest.fixture(autouse=True)
def fast_polling(monkeypatch):
    """Shrink the poll pacing so waits finish in milliseconds"""
    monkeypatch.setattr(validate, 'POLL_INTERVAL', 0.01)
    monkeypatch.setattr(validate, 'CILIUM_ENDPOINT_POLL_INTERVAL', 0.01)
    monkeypatch.setattr(teardown, 'NAMESPACE_DELETE_INTERVAL', 0.01)
