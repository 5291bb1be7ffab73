"""
One connectivity test run: optional teardown, provisioning, validation.
"""

import time
from typing import Optional

from .config import Config, Features
from .inventory import Inventory
from .k8s import ClusterClients
from .log import ConsoleLog
from .provision import Provisioner
from .teardown import delete_deployments
from .validate import Validator


class ConnectivityTest:
    def __init__(self, params: Config, features: Features, clients: ClusterClients, log: Optional[ConsoleLog] = None):
        self.params = params
        self.features = features
        self.clients = clients
        self.log = log or ConsoleLog()
        self.inventory = Inventory()

    async def setup(self) -> Inventory:
        """Bring the topology to a validated state and return what was found"""
        if self.params.force_deploy:
            await self.cleanup()

        await Provisioner(self.params, self.features, self.clients, self.log).deploy()
        await Validator(self.params, self.features, self.clients, self.inventory, self.log).validate_deployment()
        return self.inventory

    async def cleanup(self):
        for k8s in self.clients.clients():
            await delete_deployments(self.params, k8s, self.log)

    async def run(self) -> Inventory:
        try:
            start_time = time.time()
            self.log.info(f"Starting connectivity check setup in namespace {self.params.test_namespace}", "MAIN")

            inventory = await self.setup()
            summary = ', '.join(f"{k}={v}" for k, v in inventory.summary().items() if v)
            self.log.info(f"Topology validated: {summary}", "MAIN")

            if self.params.cleanup_on_completion:
                await self.cleanup()

            total_time = time.time() - start_time
            self.log.info(f"Total execution time: {total_time:.2f} seconds", "MAIN")
            return inventory

        except Exception as e:
            self.log.error(f"Connectivity check failed: {e}", "MAIN")
            raise
