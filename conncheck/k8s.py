"""
Thin async wrapper around the Kubernetes python client.

SSL/TLS Handling:
- Validates CA certificate files before using them
- Proactively tests API connectivity and auto-disables SSL verification on errors
- Supports environment variable overrides: K8S_VERIFY, OCP_API_VERIFY, K8S_CA_CERT
"""

import asyncio
import os
import ssl
import time
from typing import Any, Dict, List, Optional, Sequence

from kubernetes import client, config as kube_config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
import urllib3

from .errors import ConnectivityError, ExecError, NotReadyError
from .log import ConsoleLog

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


KIND_NAMESPACE = 'Namespace'
KIND_DEPLOYMENT = 'Deployment'
KIND_DAEMONSET = 'DaemonSet'
KIND_SERVICE = 'Service'
KIND_CONFIGMAP = 'ConfigMap'
KIND_SERVICE_ACCOUNT = 'ServiceAccount'
KIND_INGRESS = 'Ingress'

# kind -> (api attribute, method suffix, namespaced)
_KINDS = {
    KIND_NAMESPACE: ('core_v1', 'namespace', False),
    KIND_DEPLOYMENT: ('apps_v1', 'namespaced_deployment', True),
    KIND_DAEMONSET: ('apps_v1', 'namespaced_daemon_set', True),
    KIND_SERVICE: ('core_v1', 'namespaced_service', True),
    KIND_CONFIGMAP: ('core_v1', 'namespaced_config_map', True),
    KIND_SERVICE_ACCOUNT: ('core_v1', 'namespaced_service_account', True),
    KIND_INGRESS: ('networking_v1', 'namespaced_ingress', True),
}

CILIUM_GROUP = 'cilium.io'
CILIUM_VERSION = 'v2'

SSL_ERROR_INDICATORS = (
    "PEM lib",
    "CERTIFICATE_VERIFY_FAILED",
    "SSLError",
    "certificate verify failed",
    "ssl.c:",
    "[X509]",
    "Max retries exceeded",
)


def loadable_ca_bundle(path: Optional[str]) -> bool:
    """Whether ``path`` names a file ssl accepts as a trust store"""
    if not path or not os.path.isfile(path):
        return False
    try:
        ssl.create_default_context(cafile=path)
    except (OSError, ssl.SSLError):
        return False
    return True


class K8sClient:
    """Object store and remote exec access to one cluster"""

    def __init__(self, api_client: client.ApiClient, cluster_name: str, exec_timeout: float = 30):
        self.cluster_name = cluster_name
        self.exec_timeout = exec_timeout
        self._set_api_client(api_client)

    def _set_api_client(self, api_client: client.ApiClient):
        self.api_client = api_client
        self.core_v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.networking_v1 = client.NetworkingV1Api(api_client)
        self.custom_objects = client.CustomObjectsApi(api_client)

    def __repr__(self):
        return f"K8sClient({self.cluster_name!r})"

    @classmethod
    def from_config(cls, cfg, context: Optional[str] = None, log: Optional[ConsoleLog] = None) -> 'K8sClient':
        """Build a client for ``context`` with robust SSL handling"""
        log = log or ConsoleLog()
        k8s_conf = client.Configuration()
        cluster_name = context or 'default'

        # Step 1: Load kubeconfig
        try:
            if cfg.kubeconfig_path or context:
                log.info(f"Loading kubeconfig {cfg.kubeconfig_path or '(default)'} context {context or '(current)'}", "CONFIG")
                kube_config.load_kube_config(config_file=cfg.kubeconfig_path, context=context,
                                             client_configuration=k8s_conf)
            else:
                kube_config.load_incluster_config(client_configuration=k8s_conf)
                cluster_name = 'in-cluster'
                log.info("Using in-cluster Kubernetes configuration", "CONFIG")
        except kube_config.ConfigException:
            try:
                kube_config.load_kube_config(context=context, client_configuration=k8s_conf)
                log.info("Using default kubeconfig file", "CONFIG")
            except kube_config.ConfigException as e:
                raise ConnectivityError(f"Failed to load Kubernetes configuration: {e}") from e

        if cluster_name == 'default':
            cluster_name = cls._current_cluster_name(cfg.kubeconfig_path) or cluster_name

        # Step 2: Apply SSL verification setting from config/env
        if cfg.k8s_verify_ssl is not None:
            k8s_conf.verify_ssl = cfg.k8s_verify_ssl
            if not cfg.k8s_verify_ssl:
                k8s_conf.assert_hostname = False
                k8s_conf.ssl_ca_cert = None
            log.info(f"SSL verification set via environment: {cfg.k8s_verify_ssl}", "CONFIG")

        # Step 3: Validate CA certificate path
        if getattr(k8s_conf, 'ssl_ca_cert', None):
            ca_path = k8s_conf.ssl_ca_cert
            if loadable_ca_bundle(ca_path):
                cfg.k8s_ca_cert_path = ca_path
            else:
                log.warn(f"CA cert file exists but is invalid: {ca_path}", "CONFIG")
                if cfg.k8s_verify_ssl is not True:
                    log.warn("Disabling SSL verification due to invalid CA cert", "CONFIG")
                    k8s_conf.verify_ssl = False
                    k8s_conf.assert_hostname = False
                    k8s_conf.ssl_ca_cert = None

        env_ca = os.getenv('K8S_CA_CERT')
        if loadable_ca_bundle(env_ca):
            cfg.k8s_ca_cert_path = env_ca
            k8s_conf.ssl_ca_cert = env_ca
            log.info(f"Using CA cert from K8S_CA_CERT env: {env_ca}", "CONFIG")

        k8s_client = cls(client.ApiClient(configuration=k8s_conf), cluster_name, exec_timeout=cfg.exec_timeout)

        # Step 4: Proactively test API connectivity and auto-fallback on SSL errors
        k8s_client.ensure_api_connectivity(k8s_conf, force_verify=cfg.k8s_verify_ssl is True, log=log)
        log.info(f"Kubernetes API connectivity verified for cluster {cluster_name}", "CONFIG")
        return k8s_client

    @staticmethod
    def _current_cluster_name(kubeconfig_path: Optional[str]) -> Optional[str]:
        try:
            _, active = kube_config.list_kube_config_contexts(config_file=kubeconfig_path)
        except kube_config.ConfigException:
            return None
        if not active:
            return None
        return active.get('context', {}).get('cluster') or active.get('name')

    def ensure_api_connectivity(self, k8s_conf: client.Configuration, force_verify: bool, log: ConsoleLog) -> None:
        """Probe the Kubernetes API and auto-recover from common SSL/PEM issues.

        If a PEM/SSL verification error is detected, TLS verification is
        disabled as a last-resort fallback unless verification was forced.
        """
        try:
            client.VersionApi(self.api_client).get_code()
            return
        except Exception as probe_err:
            err_text = str(probe_err)
            if force_verify or not any(ind in err_text for ind in SSL_ERROR_INDICATORS):
                raise ConnectivityError(f"Kubernetes API connectivity check failed: {err_text}") from probe_err

            log.warn(
                f"Kubernetes API SSL verification failed: {err_text[:200]}... "
                "Disabling TLS verification as fallback (set K8S_VERIFY=true to force verification)",
                "CONFIG"
            )

        k8s_conf.verify_ssl = False
        k8s_conf.assert_hostname = False
        k8s_conf.ssl_ca_cert = None
        self._set_api_client(client.ApiClient(configuration=k8s_conf))
        try:
            client.VersionApi(self.api_client).get_code()
        except Exception as fallback_err:
            raise ConnectivityError(
                f"Kubernetes API connectivity failed even with TLS disabled: {fallback_err}"
            ) from fallback_err

    # Generic object CRUD

    def _method(self, verb: str, kind: str):
        api_attr, suffix, namespaced = _KINDS[kind]
        return getattr(getattr(self, api_attr), f"{verb}_{suffix}"), namespaced

    async def get_object(self, kind: str, namespace: str, name: str):
        method, namespaced = self._method('read', kind)
        if namespaced:
            return await asyncio.to_thread(method, name=name, namespace=namespace)
        return await asyncio.to_thread(method, name=name)

    async def create_object(self, kind: str, namespace: str, body):
        method, namespaced = self._method('create', kind)
        if namespaced:
            return await asyncio.to_thread(method, namespace=namespace, body=body)
        return await asyncio.to_thread(method, body=body)

    async def delete_object(self, kind: str, namespace: str, name: str):
        method, namespaced = self._method('delete', kind)
        if namespaced:
            return await asyncio.to_thread(method, name=name, namespace=namespace)
        return await asyncio.to_thread(method, name=name)

    # Listing

    async def list_pods(self, namespace: str, label_selector: str = '') -> List[client.V1Pod]:
        pods = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector
        )
        return pods.items

    async def list_services(self, namespace: str, label_selector: str = '') -> List[client.V1Service]:
        services = await asyncio.to_thread(
            self.core_v1.list_namespaced_service,
            namespace=namespace,
            label_selector=label_selector
        )
        return services.items

    async def list_nodes(self) -> List[client.V1Node]:
        nodes = await asyncio.to_thread(self.core_v1.list_node)
        return nodes.items

    async def list_cilium_external_workloads(self) -> List[Dict[str, Any]]:
        workloads = await asyncio.to_thread(
            self.custom_objects.list_cluster_custom_object,
            group=CILIUM_GROUP,
            version=CILIUM_VERSION,
            plural="ciliumexternalworkloads"
        )
        return workloads.get('items', [])

    async def get_cilium_endpoint(self, namespace: str, name: str) -> Dict[str, Any]:
        return await asyncio.to_thread(
            self.custom_objects.get_namespaced_custom_object,
            group=CILIUM_GROUP,
            version=CILIUM_VERSION,
            namespace=namespace,
            plural="ciliumendpoints",
            name=name
        )

    async def check_deployment_status(self, namespace: str, name: str) -> None:
        """Raise NotReadyError unless every replica of the deployment is ready"""
        deployment = await asyncio.to_thread(
            self.apps_v1.read_namespaced_deployment,
            name=name,
            namespace=namespace
        )

        spec_replicas = deployment.spec.replicas or 0
        status = deployment.status
        if (deployment.metadata.generation or 0) > (status.observed_generation or 0):
            raise NotReadyError(f"deployment {name} update is not yet observed by the controller")
        if spec_replicas == 0:
            raise NotReadyError(f"deployment {name} has no replicas")

        ready_replicas = status.ready_replicas or 0
        available_replicas = status.available_replicas or 0
        updated_replicas = status.updated_replicas or 0
        if not (ready_replicas == available_replicas == updated_replicas == spec_replicas):
            raise NotReadyError(
                f"deployment {name} is not ready: {ready_replicas} ready, "
                f"{available_replicas} available, {updated_replicas} updated of {spec_replicas}"
            )

    # Remote exec

    def _exec(self, namespace: str, pod: str, container: str, command: Sequence[str], timeout: float) -> str:
        kwargs = dict(command=list(command), stdin=False, stdout=True, stderr=True,
                      tty=False, _preload_content=False)
        if container:
            kwargs['container'] = container

        try:
            resp = stream(self.core_v1.connect_get_namespaced_pod_exec, pod, namespace, **kwargs)
        except ApiException as e:
            # websocket handshake and transport failures surface with status 0
            if e.status:
                raise
            raise ExecError(command, None, stderr=e.reason or str(e)) from e
        stdout, stderr = [], []
        deadline = time.monotonic() + timeout
        try:
            while resp.is_open():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise asyncio.TimeoutError(f"exec {' '.join(command)!r} in {namespace}/{pod} timed out")
                resp.update(timeout=min(1, remaining))
                if resp.peek_stdout():
                    stdout.append(resp.read_stdout())
                if resp.peek_stderr():
                    stderr.append(resp.read_stderr())
        finally:
            resp.close()

        out, err = ''.join(stdout), ''.join(stderr)
        if resp.returncode != 0:
            raise ExecError(command, resp.returncode, out, err)
        return out

    async def exec_in_pod(self, namespace: str, pod: str, container: str, command: Sequence[str],
                          timeout: Optional[float] = None) -> str:
        """Run ``command`` in the pod and return its stdout.

        An empty ``container`` targets the pod's primary container. A
        non-zero exit raises ExecError carrying stdout and stderr.
        """
        if timeout is None or timeout > self.exec_timeout:
            timeout = self.exec_timeout
        return await asyncio.to_thread(self._exec, namespace, pod, container, command, timeout)


class ClusterClients:
    """The source and destination clusters of a run.

    In single-cluster mode both names refer to the same client.
    """

    def __init__(self, src: K8sClient, dst: Optional[K8sClient] = None):
        self.src = src
        self.dst = dst if dst is not None else src

    def clients(self) -> List[K8sClient]:
        """Distinct clients, source first"""
        if self.dst is self.src:
            return [self.src]
        return [self.src, self.dst]
