"""
Run parameters and feature flags for the connectivity test topology.

Values come from environment variables first and may be overridden from the
command line before the run starts. Nothing mutates them afterwards.
"""

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Optional


FEATURE_HOST_PORT = 'host-port'
FEATURE_INGRESS_CONTROLLER = 'ingress-controller'
FEATURE_NODE_WITHOUT_CILIUM = 'node-without-cilium'

KNOWN_FEATURES = (
    FEATURE_HOST_PORT,
    FEATURE_INGRESS_CONTROLLER,
    FEATURE_NODE_WITHOUT_CILIUM,
)


_TRUE = ('true', '1', 'yes')
_FALSE = ('false', '0', 'no')


def _env_flag(*names: str) -> Optional[bool]:
    """First recognised boolean among ``names``; None when none is set"""
    for name in names:
        val = os.getenv(name, '').strip().lower()
        if val in _TRUE:
            return True
        if val in _FALSE:
            return False
    return None


def _env_bool(name: str) -> bool:
    return _env_flag(name) is True


def parse_node_selector(value: Optional[str]) -> Dict[str, str]:
    """Parse ``key=value,key=value`` into a node selector dict"""
    selector = {}
    if not value:
        return selector
    for item in value.split(','):
        item = item.strip()
        if not item:
            continue
        if '=' not in item:
            raise ValueError(f"invalid node selector entry {item!r}, expected key=value")
        key, val = item.split('=', 1)
        selector[key.strip()] = val.strip()
    return selector


class Config:
    """Configuration class"""
    def __init__(self):
        # Namespaces
        self.test_namespace = os.getenv('TEST_NAMESPACE', 'cilium-test')
        self.agent_namespace = os.getenv('AGENT_NAMESPACE', 'kube-system')

        # Images
        self.curl_image = os.getenv('CURL_IMAGE', 'quay.io/cilium/alpine-curl:v1.6.0')
        self.json_mock_image = os.getenv('JSON_MOCK_IMAGE', 'quay.io/cilium/json-mock:v1.3.3')
        self.dns_test_server_image = os.getenv('DNS_TEST_SERVER_IMAGE', 'docker.io/coredns/coredns:1.10.0')
        self.performance_image = os.getenv('PERFORMANCE_IMAGE', 'quay.io/cilium/network-perf:a816f935930cb2b40ba43230643da4d5751a5711')

        # Timeouts (seconds)
        self.pod_ready_timeout = float(os.getenv('POD_READY_TIMEOUT', '300'))
        self.service_ready_timeout = float(os.getenv('SERVICE_READY_TIMEOUT', '30'))
        self.cilium_endpoint_timeout = float(os.getenv('CILIUM_ENDPOINT_TIMEOUT', '300'))
        self.ipcache_timeout = float(os.getenv('IPCACHE_TIMEOUT', '20'))
        self.exec_timeout = float(os.getenv('EXEC_TIMEOUT', '30'))

        # Scenario selection
        self.multi_cluster = os.getenv('MULTI_CLUSTER', '')
        self.perf = _env_bool('PERF')
        self.perf_host_net = _env_bool('PERF_HOST_NET')
        self.single_node = _env_bool('SINGLE_NODE')
        self.node_selector = parse_node_selector(os.getenv('NODE_SELECTOR'))

        # Run control
        self.force_deploy = _env_bool('FORCE_DEPLOY')
        self.skip_ipcache_check = _env_bool('SKIP_IPCACHE_CHECK')
        self.cleanup_on_completion = _env_bool('CLEANUP_ON_COMPLETION')

        # Feature flags normally reported by feature detection
        self.enabled_features = [
            f.strip() for f in os.getenv('FEATURES', '').split(',') if f.strip()
        ]

        # Cluster access
        self.kubeconfig_path: Optional[str] = os.getenv('KUBECONFIG')
        self.context: Optional[str] = os.getenv('KUBE_CONTEXT') or None
        # None probes the API server
        self.k8s_verify_ssl: Optional[bool] = _env_flag('K8S_VERIFY', 'OCP_API_VERIFY', 'VERIFY_SSL')
        self.k8s_ca_cert_path: Optional[str] = None

        # Logging
        self.log_file = os.getenv('LOG_FILE', 'connectivity_check.log')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO')

    @property
    def is_multi_cluster(self) -> bool:
        return self.multi_cluster != ''

    @property
    def spans_nodes(self) -> bool:
        """True when the topology places echo pods away from the client node"""
        return not self.single_node or self.is_multi_cluster


@dataclass(frozen=True)
class Feature:
    enabled: bool = False


class Features(dict):
    """Read-only view of detected cluster capabilities.

    Unknown feature names read as disabled so callers can index freely.
    """

    def __missing__(self, key):
        return Feature(enabled=False)

    def enabled(self, name: str) -> bool:
        return self[name].enabled

    @classmethod
    def from_names(cls, names: Iterable[str]) -> 'Features':
        return cls({name: Feature(enabled=True) for name in names})
