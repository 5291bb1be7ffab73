"""
Runtime registry of discovered pods, services and external workloads.

One Inventory belongs to one ConnectivityTest run. It is filled during the
sequential discovery phase and only read afterwards.
"""

import ipaddress
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kubernetes import client

IP_FAMILY_ANY = 'any'
IP_FAMILY_V4 = 'ipv4'
IP_FAMILY_V6 = 'ipv6'


@dataclass
class Pod:
    k8s_client: Any
    pod: client.V1Pod
    scheme: str = ''
    port: int = 0

    @property
    def name(self) -> str:
        return self.pod.metadata.name

    @property
    def namespace(self) -> str:
        return self.pod.metadata.namespace

    @property
    def labels(self) -> Dict[str, str]:
        return self.pod.metadata.labels or {}

    @property
    def host_ip(self) -> str:
        return self.pod.status.host_ip or ''

    @property
    def node_name(self) -> str:
        return self.pod.spec.node_name or ''

    def addresses(self) -> List[str]:
        status = self.pod.status
        # renamed from pod_i_ps to pod_ips in newer client releases
        pod_ips = getattr(status, 'pod_ips', None) or getattr(status, 'pod_i_ps', None) or []
        ips = [p.ip for p in pod_ips if p.ip]
        if not ips and status.pod_ip:
            ips = [status.pod_ip]
        return ips

    def address(self, family: str = IP_FAMILY_ANY) -> str:
        for ip in self.addresses():
            version = ipaddress.ip_address(ip).version
            if family == IP_FAMILY_ANY \
                    or (family == IP_FAMILY_V4 and version == 4) \
                    or (family == IP_FAMILY_V6 and version == 6):
                return ip
        return ''

    def __str__(self):
        return f"{self.namespace}/{self.name}"


@dataclass
class Service:
    service: client.V1Service

    @property
    def name(self) -> str:
        return self.service.metadata.name

    @property
    def namespace(self) -> str:
        return self.service.metadata.namespace

    @property
    def type(self) -> str:
        return self.service.spec.type or 'ClusterIP'

    def address(self) -> str:
        """Address nslookup should return for this service, or '' if none applies"""
        if self.type in ('ClusterIP', 'NodePort'):
            return self.service.spec.cluster_ip or ''
        if self.type == 'LoadBalancer':
            lb = self.service.status.load_balancer if self.service.status else None
            if lb and lb.ingress:
                return lb.ingress[0].ip or ''
        return ''

    def node_ports(self) -> List[int]:
        return [p.node_port for p in (self.service.spec.ports or []) if p.node_port]


@dataclass
class ExternalWorkload:
    workload: Dict[str, Any]

    @property
    def name(self) -> str:
        return self.workload.get('metadata', {}).get('name', '')


@dataclass
class Inventory:
    client_pods: Dict[str, Pod] = field(default_factory=dict)
    echo_pods: Dict[str, Pod] = field(default_factory=dict)
    echo_external_pods: Dict[str, Pod] = field(default_factory=dict)
    perf_client_pods: Dict[str, Pod] = field(default_factory=dict)
    perf_server_pods: Dict[str, Pod] = field(default_factory=dict)
    host_netns_pods_by_node: Dict[str, Pod] = field(default_factory=dict)
    cilium_pods: Dict[str, Pod] = field(default_factory=dict)
    echo_services: Dict[str, Service] = field(default_factory=dict)
    ingress_services: Dict[str, Service] = field(default_factory=dict)
    external_workloads: Dict[str, ExternalWorkload] = field(default_factory=dict)

    def random_client_pod(self) -> Optional[Pod]:
        if not self.client_pods:
            return None
        return random.choice(list(self.client_pods.values()))

    def summary(self) -> Dict[str, int]:
        return {
            'client_pods': len(self.client_pods),
            'echo_pods': len(self.echo_pods),
            'echo_external_pods': len(self.echo_external_pods),
            'perf_client_pods': len(self.perf_client_pods),
            'perf_server_pods': len(self.perf_server_pods),
            'host_netns_pods': len(self.host_netns_pods_by_node),
            'cilium_pods': len(self.cilium_pods),
            'echo_services': len(self.echo_services),
            'ingress_services': len(self.ingress_services),
            'external_workloads': len(self.external_workloads),
        }
