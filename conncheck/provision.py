"""
Idempotent creation of the connectivity test topology.
"""

from kubernetes.client.rest import ApiException

from .config import Config, Features
from .errors import ProvisionError, is_already_exists, is_not_found
from .k8s import ClusterClients, K8sClient
from .log import ConsoleLog
from .topology import DST, PerfDeploymentNames, TopologyObject, find_perf_zone, plan_topology


class Provisioner:
    """Ensures every object of the planned topology exists"""

    def __init__(self, params: Config, features: Features, clients: ClusterClients, log: ConsoleLog):
        self.params = params
        self.features = features
        self.clients = clients
        self.log = log

    def client_for(self, target: str) -> K8sClient:
        return self.clients.dst if target == DST else self.clients.src

    async def perf_zone(self) -> str:
        """Zone for perf workloads, preferring one that holds more than one node"""
        try:
            nodes = await self.clients.src.list_nodes()
        except ApiException as e:
            raise ProvisionError(f"unable to query nodes: {e}") from e

        zone, shared = find_perf_zone(nodes)
        if not shared:
            self.log.warn("Each zone only has a single node - could impact the performance test results", "PROVISION")
        return zone

    async def deploy(self):
        """Create whatever part of the topology is missing"""
        zone = ''
        if self.params.perf:
            zone = await self.perf_zone()
            if self.params.perf_host_net:
                self.log.info("Deploying Perf deployments using host networking", "PROVISION")
            nm = PerfDeploymentNames.for_params(self.params)
            self.log.debug(f"Perf deployments: {nm.client}, {nm.server}, {nm.client_across} in zone {zone!r}", "PROVISION")

        plan = plan_topology(self.params, self.features, zone)
        created = 0
        for obj in plan:
            if await self.ensure(obj):
                created += 1

        self.log.info(f"Topology in namespace {self.params.test_namespace} ready to validate "
                      f"({created} created, {len(plan) - created} already present)", "PROVISION")

    async def ensure(self, obj: TopologyObject) -> bool:
        """Create ``obj`` on its target cluster unless it exists.

        Returns True if this call created it.
        """
        k8s = self.client_for(obj.target)
        namespace = self.params.test_namespace

        try:
            await k8s.get_object(obj.kind, namespace, obj.name)
            return False
        except ApiException as e:
            if not is_not_found(e):
                raise ProvisionError(
                    f"unable to look up {obj.kind} {obj.name} in {k8s.cluster_name}: {e.reason or e}"
                ) from e

        self.log.info(f"✨ [{k8s.cluster_name}] Deploying {obj.name} {obj.kind.lower()}...", k8s.cluster_name)
        try:
            await k8s.create_object(obj.kind, namespace, obj.build())
        except ApiException as e:
            if is_already_exists(e):
                self.log.info(f"{obj.kind} {obj.name} already exists", k8s.cluster_name)
                return False
            raise ProvisionError(f"unable to create {obj.kind.lower()} {obj.name}: {e.reason or e}") from e
        return True
