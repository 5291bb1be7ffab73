"""
Object factory for the connectivity test topology.

Every builder here is pure: it returns kubernetes client model objects and
never talks to a cluster. Names and labels assigned here are the same ones
the validator selects on, so changing them breaks discovery.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client


LABEL_TOPOLOGY_ZONE = 'topology.kubernetes.io/zone'
LABEL_HOSTNAME = 'kubernetes.io/hostname'

DNS_TEST_SERVER_CONTAINER_NAME = 'dns-test-server'
COREDNS_CONFIGMAP_NAME = 'coredns-configmap'
COREDNS_CONFIG_VOLUME_NAME = 'coredns-config-volume'
COREFILE = """. {
    local
    ready
    log
}"""

INGRESS_NAME = 'ingress-service'
INGRESS_CLASS_NAME = 'cilium'
INGRESS_INSECURE_NODE_PORT = '31000'
INGRESS_SECURE_NODE_PORT = '31001'

GLOBAL_SERVICE_ANNOTATIONS = {
    'service.cilium.io/global': 'true',
    'io.cilium/global-service': 'true',
}


@dataclass
class DeploymentParameters:
    name: str
    kind: str
    image: str
    port: int = 0
    replicas: int = 1
    named_port: str = ''
    host_port: int = 0
    command: Optional[List[str]] = None
    affinity: Optional[client.V1Affinity] = None
    node_selector: Optional[Dict[str, str]] = None
    readiness_probe: Optional[client.V1Probe] = None
    labels: Dict[str, str] = field(default_factory=dict)
    host_network: bool = False
    tolerations: Optional[List[client.V1Toleration]] = None


@dataclass
class DaemonSetParameters:
    name: str
    kind: str
    image: str
    port: int = 0
    command: Optional[List[str]] = None
    affinity: Optional[client.V1Affinity] = None
    readiness_probe: Optional[client.V1Probe] = None
    labels: Dict[str, str] = field(default_factory=dict)
    host_network: bool = False
    tolerations: Optional[List[client.V1Toleration]] = None


def workload_labels(name: str, kind: str) -> Dict[str, str]:
    return {'name': name, 'kind': kind}


def net_raw_security_context() -> client.V1SecurityContext:
    return client.V1SecurityContext(capabilities=client.V1Capabilities(add=["NET_RAW"]))


def new_deployment(p: DeploymentParameters) -> client.V1Deployment:
    replicas = p.replicas or 1
    named_port = p.named_port or f"port-{p.port}"

    template_labels = workload_labels(p.name, p.kind)
    template_labels.update(p.labels)

    return client.V1Deployment(
        api_version='apps/v1',
        kind='Deployment',
        metadata=client.V1ObjectMeta(
            name=p.name,
            labels=workload_labels(p.name, p.kind)
        ),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(
                match_labels=workload_labels(p.name, p.kind)
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(
                    name=p.name,
                    labels=template_labels
                ),
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(
                            name=p.name,
                            env=[
                                client.V1EnvVar(name="PORT", value=str(p.port)),
                                client.V1EnvVar(name="NAMED_PORT", value=named_port),
                            ],
                            ports=[
                                client.V1ContainerPort(
                                    name=named_port,
                                    container_port=p.port,
                                    host_port=p.host_port or None
                                )
                            ],
                            image=p.image,
                            image_pull_policy="IfNotPresent",
                            command=p.command,
                            readiness_probe=p.readiness_probe,
                            security_context=net_raw_security_context()
                        )
                    ],
                    affinity=p.affinity,
                    node_selector=p.node_selector or None,
                    host_network=p.host_network,
                    tolerations=p.tolerations,
                    service_account_name=p.name
                )
            )
        )
    )


def new_deployment_with_dns_test_server(p: DeploymentParameters, dns_test_server_image: str) -> client.V1Deployment:
    """Deployment with a CoreDNS sidecar answering local queries on port 53"""
    dep = new_deployment(p)
    pod_spec = dep.spec.template.spec

    pod_spec.containers.append(
        client.V1Container(
            name=DNS_TEST_SERVER_CONTAINER_NAME,
            args=["-conf", "/etc/coredns/Corefile"],
            ports=[
                client.V1ContainerPort(container_port=53, name="dns-53"),
                client.V1ContainerPort(container_port=53, name="dns-udp-53", protocol="UDP"),
            ],
            image=dns_test_server_image,
            image_pull_policy="IfNotPresent",
            readiness_probe=new_local_readiness_probe(8181, "/ready"),
            volume_mounts=[
                client.V1VolumeMount(
                    name=COREDNS_CONFIG_VOLUME_NAME,
                    mount_path="/etc/coredns",
                    read_only=True
                )
            ]
        )
    )
    pod_spec.volumes = [
        client.V1Volume(
            name=COREDNS_CONFIG_VOLUME_NAME,
            config_map=client.V1ConfigMapVolumeSource(
                name=COREDNS_CONFIGMAP_NAME,
                items=[client.V1KeyToPath(key="Corefile", path="Corefile")]
            )
        )
    ]
    return dep


def new_daemonset(p: DaemonSetParameters) -> client.V1DaemonSet:
    template_labels = workload_labels(p.name, p.kind)
    template_labels.update(p.labels)

    return client.V1DaemonSet(
        api_version='apps/v1',
        kind='DaemonSet',
        metadata=client.V1ObjectMeta(
            name=p.name,
            labels=workload_labels(p.name, p.kind)
        ),
        spec=client.V1DaemonSetSpec(
            selector=client.V1LabelSelector(
                match_labels=workload_labels(p.name, p.kind)
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(
                    name=p.name,
                    labels=template_labels
                ),
                spec=client.V1PodSpec(
                    containers=[
                        client.V1Container(
                            name=p.name,
                            image=p.image,
                            image_pull_policy="IfNotPresent",
                            command=p.command,
                            readiness_probe=p.readiness_probe,
                            security_context=net_raw_security_context()
                        )
                    ],
                    affinity=p.affinity,
                    host_network=p.host_network,
                    tolerations=p.tolerations
                )
            )
        )
    )


def new_service(name: str, selector: Dict[str, str], labels: Dict[str, str], port_name: str, port: int,
                annotations: Optional[Dict[str, str]] = None) -> client.V1Service:
    return client.V1Service(
        api_version='v1',
        kind='Service',
        metadata=client.V1ObjectMeta(
            name=name,
            labels=dict(labels),
            annotations=dict(annotations) if annotations else None
        ),
        spec=client.V1ServiceSpec(
            type="NodePort",
            ports=[client.V1ServicePort(name=port_name, port=port)],
            selector=dict(selector),
            ip_family_policy="PreferDualStack"
        )
    )


def new_local_readiness_probe(port: int, path: str) -> client.V1Probe:
    """HTTP readiness probe against the container's own port.

    Test fixtures should fail fast, so the cadence is short.
    """
    return client.V1Probe(
        http_get=client.V1HTTPGetAction(path=path, port=port, scheme="HTTP"),
        timeout_seconds=2,
        success_threshold=1,
        period_seconds=1,
        initial_delay_seconds=1,
        failure_threshold=3
    )


def new_ingress(backend_service: str, backend_port: int = 8080) -> client.V1Ingress:
    return client.V1Ingress(
        api_version='networking.k8s.io/v1',
        kind='Ingress',
        metadata=client.V1ObjectMeta(
            name=INGRESS_NAME,
            annotations={
                "ingress.cilium.io/loadbalancer-mode": "dedicated",
                "ingress.cilium.io/service-type": "NodePort",
                "ingress.cilium.io/insecure-node-port": INGRESS_INSECURE_NODE_PORT,
                "ingress.cilium.io/secure-node-port": INGRESS_SECURE_NODE_PORT,
            }
        ),
        spec=client.V1IngressSpec(
            ingress_class_name=INGRESS_CLASS_NAME,
            rules=[
                client.V1IngressRule(
                    http=client.V1HTTPIngressRuleValue(
                        paths=[
                            client.V1HTTPIngressPath(
                                path="/",
                                path_type="ImplementationSpecific",
                                backend=client.V1IngressBackend(
                                    service=client.V1IngressServiceBackend(
                                        name=backend_service,
                                        port=client.V1ServiceBackendPort(number=backend_port)
                                    )
                                )
                            )
                        ]
                    )
                )
            ]
        )
    )


def new_namespace(name: str) -> client.V1Namespace:
    return client.V1Namespace(
        api_version='v1',
        kind='Namespace',
        metadata=client.V1ObjectMeta(name=name)
    )


def new_service_account(name: str) -> client.V1ServiceAccount:
    return client.V1ServiceAccount(
        api_version='v1',
        kind='ServiceAccount',
        metadata=client.V1ObjectMeta(name=name)
    )


def new_coredns_configmap() -> client.V1ConfigMap:
    return client.V1ConfigMap(
        api_version='v1',
        kind='ConfigMap',
        metadata=client.V1ObjectMeta(name=COREDNS_CONFIGMAP_NAME),
        data={"Corefile": COREFILE}
    )


# Affinity helpers

def _name_in(values: List[str]) -> client.V1LabelSelector:
    return client.V1LabelSelector(
        match_expressions=[
            client.V1LabelSelectorRequirement(key="name", operator="In", values=list(values))
        ]
    )


def required_pod_affinity_term(deployment_name: str) -> client.V1PodAffinityTerm:
    return client.V1PodAffinityTerm(
        label_selector=_name_in([deployment_name]),
        topology_key=LABEL_HOSTNAME
    )


def co_located_with(deployment_name: str) -> client.V1Affinity:
    """Required pod affinity: same node as ``deployment_name``"""
    return client.V1Affinity(
        pod_affinity=client.V1PodAffinity(
            required_during_scheduling_ignored_during_execution=[
                required_pod_affinity_term(deployment_name)
            ]
        )
    )


def separated_from(deployment_name: str) -> client.V1Affinity:
    """Required pod anti-affinity: different node from ``deployment_name``"""
    return client.V1Affinity(
        pod_anti_affinity=client.V1PodAntiAffinity(
            required_during_scheduling_ignored_during_execution=[
                required_pod_affinity_term(deployment_name)
            ]
        )
    )


def preferred_zone_affinity(zone: str) -> client.V1NodeAffinity:
    return client.V1NodeAffinity(
        preferred_during_scheduling_ignored_during_execution=[
            client.V1PreferredSchedulingTerm(
                weight=100,
                preference=client.V1NodeSelectorTerm(
                    match_expressions=[
                        client.V1NodeSelectorRequirement(key=LABEL_TOPOLOGY_ZONE, operator="In", values=[zone])
                    ]
                )
            )
        ]
    )


def tolerate_all() -> List[client.V1Toleration]:
    return [client.V1Toleration(operator="Exists")]
