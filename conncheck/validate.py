"""
Discovery and convergence checks for a provisioned topology.

Each wait_for_* method is a thin probe handed to ``poll_until``; the probe
raises a retryable error until the observed state is the expected one.
"""

from typing import List

from kubernetes.client.rest import ApiException

from .config import Config, FEATURE_INGRESS_CONTROLLER, FEATURE_NODE_WITHOUT_CILIUM, Features
from .errors import (
    ConnectivityError,
    NoClientPodError,
    NotReadyError,
    UnexpectedCountError,
    is_not_found,
)
from .inventory import ExternalWorkload, Inventory, IP_FAMILY_ANY, Pod, Service
from .ipcache import IPCACHE_DUMP_COMMAND, IPCache
from .k8s import ClusterClients, K8sClient
from .log import ConsoleLog
from .topology import (
    ECHO_EXTERNAL_NODE_DEPLOYMENT_NAME,
    ECHO_OTHER_NODE_DEPLOYMENT_NAME,
    ECHO_PORT,
    ECHO_SAME_NODE_DEPLOYMENT_NAME,
    KIND_CLIENT,
    KIND_ECHO,
    KIND_HOST_NETNS,
    KIND_PERF,
    PERF_SERVER_PORT,
    deployment_list,
)
from .wait import Deadline, poll_until

AGENT_CONTAINER_NAME = 'cilium-agent'
AGENT_POD_SELECTOR = 'k8s-app=cilium'
INGRESS_SERVICE_SELECTOR = 'cilium.io/ingress=true'

# Pacing between probe attempts (seconds)
POLL_INTERVAL = 1.0
CILIUM_ENDPOINT_POLL_INTERVAL = 2.0

NODE_PORT_CONNECT_TIMEOUT = 3


class Validator:
    """Waits for the topology to converge and fills the Inventory"""

    def __init__(self, params: Config, features: Features, clients: ClusterClients,
                 inventory: Inventory, log: ConsoleLog):
        self.params = params
        self.features = features
        self.clients = clients
        self.inventory = inventory
        self.log = log

    @property
    def namespace(self) -> str:
        return self.params.test_namespace

    async def validate_deployment(self):
        """Check the deployments we created have the expected pods and that
        the data plane knows about them."""
        self.log.debug("Validating Deployments...", "VALIDATE")
        src = self.clients.src
        inv = self.inventory

        src_deployments, dst_deployments = deployment_list(self.params, self.features)
        if src_deployments:
            await self.wait_for_deployments(src, src_deployments)
        if dst_deployments:
            await self.wait_for_deployments(self.clients.dst, dst_deployments)

        await self.discover_agent_pods()

        if self.params.perf:
            await self.discover_perf_pods()
            return

        for pod in await self._list_pods(src, f"kind={KIND_CLIENT}", "client pods"):
            await self.wait_for_cilium_endpoint(src, pod.metadata.name)
            inv.client_pods[pod.metadata.name] = Pod(src, pod)

        same_node_pod = await self._single_pod(src, ECHO_SAME_NODE_DEPLOYMENT_NAME, "same node")
        dns_deadline = Deadline.after(self.params.ipcache_timeout)
        for cp in inv.client_pods.values():
            await self.wait_for_pod_dns(cp, same_node_pod, dns_deadline)

        if self.params.spans_nodes:
            other_node_pod = await self._single_pod(self.clients.dst, ECHO_OTHER_NODE_DEPLOYMENT_NAME, "other node")
            dns_deadline = Deadline.after(self.params.ipcache_timeout)
            for cp in inv.client_pods.values():
                await self.wait_for_pod_dns(cp, other_node_pod, dns_deadline)

        if self.features.enabled(FEATURE_NODE_WITHOUT_CILIUM):
            dst = self.clients.dst
            for pod in await self._list_pods(dst, f"name={ECHO_EXTERNAL_NODE_DEPLOYMENT_NAME}", "external node pods"):
                inv.echo_external_pods[pod.metadata.name] = Pod(dst, pod, scheme="http", port=ECHO_PORT)

        svc_dns_deadline = Deadline.after(self.params.ipcache_timeout)
        for cp in inv.client_pods.values():
            await self.wait_for_service_dns(cp, svc_dns_deadline)

        for k8s in self.clients.clients():
            for pod in await self._list_pods(k8s, f"kind={KIND_ECHO}", "echo pods"):
                await self.wait_for_cilium_endpoint(k8s, pod.metadata.name)
                inv.echo_pods[pod.metadata.name] = Pod(k8s, pod, scheme="http", port=ECHO_PORT)

        for k8s in self.clients.clients():
            for svc in await self._list_services(k8s, f"kind={KIND_ECHO}", "echo services"):
                # clients() lists the source cluster first; its copy of a
                # global service has a ClusterIP the client pods can use.
                if self.params.is_multi_cluster and svc.metadata.name in inv.echo_services:
                    continue
                inv.echo_services[svc.metadata.name] = Service(svc)

        for svc in inv.echo_services.values():
            await self.wait_for_service(svc)

        if self.features.enabled(FEATURE_INGRESS_CONTROLLER):
            for svc in await self._list_services(src, INGRESS_SERVICE_SELECTOR, "ingress services"):
                inv.ingress_services[svc.metadata.name] = Service(svc)

        if not self.params.is_multi_cluster:
            for agent in inv.cilium_pods.values():
                for svc in inv.echo_services.values():
                    await self.wait_for_node_ports(agent.host_ip, svc)

        for k8s in self.clients.clients():
            for pod in await self._list_pods(k8s, f"kind={KIND_HOST_NETNS}", "host netns pods"):
                inv.host_netns_pods_by_node[pod.spec.node_name] = Pod(k8s, pod)

        await self.discover_external_workloads()

        if self.params.skip_ipcache_check:
            self.log.info("Skipping IPCache check", "VALIDATE")
        else:
            ipcache_deadline = Deadline.after(self.params.ipcache_timeout)
            for agent in inv.cilium_pods.values():
                await self.wait_for_ipcache(agent, ipcache_deadline)

    # Discovery helpers

    async def _list_pods(self, k8s: K8sClient, selector: str, what: str):
        try:
            return await k8s.list_pods(self.namespace, label_selector=selector)
        except ApiException as e:
            raise ConnectivityError(f"unable to list {what}: {e.status} {e.reason}") from e

    async def _list_services(self, k8s: K8sClient, selector: str, what: str):
        try:
            return await k8s.list_services(self.namespace, label_selector=selector)
        except ApiException as e:
            raise ConnectivityError(f"unable to list {what}: {e.status} {e.reason}") from e

    async def _single_pod(self, k8s: K8sClient, deployment: str, what: str) -> Pod:
        pods = await self._list_pods(k8s, f"name={deployment}", f"{what} pods")
        if len(pods) != 1:
            raise UnexpectedCountError(f"unexpected number of {what} pods: {len(pods)}")
        return Pod(k8s, pods[0])

    async def discover_agent_pods(self):
        """Register the networking agent pods of every cluster"""
        for k8s in self.clients.clients():
            try:
                agents = await k8s.list_pods(self.params.agent_namespace, label_selector=AGENT_POD_SELECTOR)
            except ApiException as e:
                raise ConnectivityError(f"unable to list Cilium pods: {e.status} {e.reason}") from e
            for pod in agents:
                self.inventory.cilium_pods[pod.metadata.name] = Pod(k8s, pod)

    async def discover_perf_pods(self):
        src = self.clients.src
        for pod in await self._list_pods(src, f"kind={KIND_PERF}", "perf pods"):
            # Pods of the other networking variant may share the namespace
            if bool(pod.spec.host_network) != self.params.perf_host_net:
                continue

            # Host-network pods have no endpoint of their own
            if not self.params.perf_host_net:
                await self.wait_for_cilium_endpoint(src, pod.metadata.name)

            if 'server' in (pod.metadata.labels or {}):
                self.inventory.perf_server_pods[pod.metadata.name] = Pod(src, pod, port=PERF_SERVER_PORT)
            else:
                self.inventory.perf_client_pods[pod.metadata.name] = Pod(src, pod)

    async def discover_external_workloads(self):
        crd_missing_logged = False
        for k8s in self.clients.clients():
            try:
                workloads = await k8s.list_cilium_external_workloads()
            except ApiException as e:
                if is_not_found(e):
                    if not crd_missing_logged:
                        self.log.info("ciliumexternalworkloads.cilium.io is not defined. "
                                      "Disabling external workload tests", "VALIDATE")
                        crd_missing_logged = True
                    continue
                raise ConnectivityError(f"unable to list external workloads: {e.status} {e.reason}") from e
            for workload in workloads:
                ew = ExternalWorkload(workload)
                self.inventory.external_workloads[ew.name] = ew

    # Convergence checks

    async def wait_for_deployments(self, k8s: K8sClient, deployments: List[str]):
        self.log.info(f"⌛ [{k8s.cluster_name}] Waiting for deployments {deployments} to become ready...",
                      k8s.cluster_name)
        deadline = Deadline.after(self.params.pod_ready_timeout)
        for name in deployments:
            await poll_until(
                lambda: k8s.check_deployment_status(self.namespace, name),
                interval=POLL_INTERVAL,
                deadline=deadline,
                description=f"deployment {name} to become ready",
            )

    async def wait_for_cilium_endpoint(self, k8s: K8sClient, name: str):
        self.log.info(f"⌛ [{k8s.cluster_name}] Waiting for CiliumEndpoint for pod {self.namespace}/{name} to appear...",
                      k8s.cluster_name)
        await poll_until(
            lambda: k8s.get_cilium_endpoint(self.namespace, name),
            interval=CILIUM_ENDPOINT_POLL_INTERVAL,
            deadline=Deadline.after(self.params.cilium_endpoint_timeout),
            description=f"CiliumEndpoint for pod {name} to appear",
        )

    async def wait_for_pod_dns(self, src_pod: Pod, dst_pod: Pod, deadline: Deadline):
        """Check src_pod can query the DNS server sidecar on dst_pod.

        The sidecar runs the CoreDNS ``local`` plugin, so a lookup of
        ``localhost`` is answered; only the exit status matters.
        """
        self.log.info(f"⌛ [{src_pod.k8s_client.cluster_name}] Waiting for pod {src_pod.name} "
                      f"to reach DNS server on {dst_pod.name} pod...", src_pod.k8s_client.cluster_name)
        target = "localhost"

        async def probe():
            await src_pod.k8s_client.exec_in_pod(
                src_pod.namespace, src_pod.name, "",
                ["nslookup", target, dst_pod.address(IP_FAMILY_ANY)],
                timeout=deadline.remaining())

        await poll_until(
            probe,
            interval=POLL_INTERVAL,
            deadline=deadline,
            description=f"lookup for {target} from pod {src_pod.name} to server on pod {dst_pod.name} to succeed",
        )

    async def wait_for_service_dns(self, pod: Pod, deadline: Deadline):
        """Check kube-dns answers for cluster services from ``pod``"""
        self.log.info(f"⌛ [{pod.k8s_client.cluster_name}] Waiting for pod {pod.name} "
                      f"to reach default/kubernetes service...", pod.k8s_client.cluster_name)
        target = "kubernetes.default"

        async def probe():
            await pod.k8s_client.exec_in_pod(pod.namespace, pod.name, "", ["nslookup", target],
                                             timeout=deadline.remaining())

        await poll_until(
            probe,
            interval=POLL_INTERVAL,
            deadline=deadline,
            description=f"lookup for {target} from pod {pod.name} to succeed",
        )

    def _client_pod(self) -> Pod:
        pod = self.inventory.random_client_pod()
        if pod is None:
            raise NoClientPodError("no client pod available")
        return pod

    async def wait_for_service(self, service: Service):
        """Check the service name resolves, and to the service's own address.

        Services without an address to compare (headless, or a LoadBalancer
        that has none yet) only need to resolve.
        """
        src = self.clients.src
        self.log.info(f"⌛ [{src.cluster_name}] Waiting for Service {service.name} to become ready...",
                      src.cluster_name)
        pod = self._client_pod()
        deadline = Deadline.after(self.params.service_ready_timeout)

        async def probe():
            # BusyBox nslookup doesn't support any arguments.
            stdout = await pod.k8s_client.exec_in_pod(
                pod.namespace, pod.name, pod.labels.get('name', ''), ["nslookup", service.name],
                timeout=deadline.remaining())

            svc_ip = service.address()
            if svc_ip == '':
                return
            output = stdout.replace("\r\n", "\n")
            if f"Address: {svc_ip}\n" not in output:
                raise NotReadyError(f"Service IP {svc_ip!r} not found in nslookup output {output!r}")

        await poll_until(
            probe,
            interval=POLL_INTERVAL,
            deadline=deadline,
            description=f"service {service.name}",
        )

    async def wait_for_node_ports(self, node_ip: str, service: Service):
        """Wait until every node port of ``service`` accepts TCP on ``node_ip``"""
        pod = self._client_pod()
        deadline = Deadline.after(self.params.service_ready_timeout)
        cluster = self.clients.src.cluster_name

        for node_port in service.node_ports():
            self.log.info(f"⌛ [{cluster}] Waiting for NodePort {node_ip}:{node_port} ({service.name}) "
                          f"to become ready...", cluster)

            async def probe():
                await pod.k8s_client.exec_in_pod(
                    pod.namespace, pod.name, pod.labels.get('name', ''),
                    ["nc", "-w", str(NODE_PORT_CONNECT_TIMEOUT), "-z", node_ip, str(node_port)],
                    timeout=deadline.remaining())

            await poll_until(
                probe,
                interval=POLL_INTERVAL,
                deadline=deadline,
                description=f"NodePort {node_ip}:{node_port} ({service.name})",
            )

    async def wait_for_ipcache(self, agent: Pod, deadline: Deadline):
        self.log.info(f"⌛ [{agent.k8s_client.cluster_name}] Waiting for Cilium pod {agent.name} "
                      f"to have all the pod IPs in eBPF ipcache...", agent.k8s_client.cluster_name)

        await poll_until(
            lambda: self.validate_ipcache(agent, deadline),
            interval=POLL_INTERVAL,
            deadline=deadline,
            description=f"pod IDs in ipcache of Cilium pod {agent.name}",
        )
        self.log.debug("Successfully validated all podIDs in ipcache", "VALIDATE")

    async def validate_ipcache(self, agent: Pod, deadline: Deadline):
        """One attempt: every client and echo pod has an identity in a fresh dump"""
        stdout = await agent.k8s_client.exec_in_pod(
            agent.namespace, agent.name, AGENT_CONTAINER_NAME, IPCACHE_DUMP_COMMAND,
            timeout=deadline.remaining())
        ipcache = IPCache.from_json(stdout)

        for role, pods in (("client", self.inventory.client_pods), ("echo", self.inventory.echo_pods)):
            for pod in pods.values():
                try:
                    ipcache.find_pod_id(pod)
                except NotReadyError as e:
                    raise NotReadyError(f"couldn't find {role} Pod {pod} in ipcache: {e}") from e
