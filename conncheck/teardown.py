"""
Best-effort removal of the connectivity test topology.
"""

from kubernetes.client.rest import ApiException

from .config import Config
from .errors import NotReadyError, is_not_found
from .k8s import (
    K8sClient,
    KIND_CONFIGMAP,
    KIND_DAEMONSET,
    KIND_DEPLOYMENT,
    KIND_INGRESS,
    KIND_NAMESPACE,
    KIND_SERVICE,
    KIND_SERVICE_ACCOUNT,
)
from .log import ConsoleLog
from .manifests import COREDNS_CONFIGMAP_NAME, INGRESS_NAME
from .topology import (
    ECHO_OTHER_NODE_DEPLOYMENT_NAME,
    ECHO_SAME_NODE_DEPLOYMENT_NAME,
    HOST_NETNS_DEPLOYMENT_NAME,
    all_deployment_names,
)
from .wait import Deadline, poll_until

NAMESPACE_DELETE_INTERVAL = 1.0


def teardown_objects(params: Config):
    """(kind, name) pairs deleted before the namespace, in order"""
    deployments = all_deployment_names(params)
    objects = [(KIND_DEPLOYMENT, name) for name in deployments]
    objects += [(KIND_SERVICE_ACCOUNT, name) for name in deployments]
    objects += [
        (KIND_SERVICE, ECHO_SAME_NODE_DEPLOYMENT_NAME),
        (KIND_SERVICE, ECHO_OTHER_NODE_DEPLOYMENT_NAME),
        (KIND_DAEMONSET, HOST_NETNS_DEPLOYMENT_NAME),
        (KIND_INGRESS, INGRESS_NAME),
        (KIND_CONFIGMAP, COREDNS_CONFIGMAP_NAME),
    ]
    return objects


async def _delete_quietly(k8s: K8sClient, kind: str, namespace: str, name: str, log: ConsoleLog) -> bool:
    try:
        await k8s.delete_object(kind, namespace, name)
        return True
    except ApiException as e:
        if not is_not_found(e):
            log.debug(f"Failed to delete {kind} {name}: {e.status} {e.reason}", k8s.cluster_name)
        return False


async def delete_deployments(params: Config, k8s: K8sClient, log: ConsoleLog):
    """Delete the topology from one cluster and wait for the namespace to go.

    Individual deletions may fail without stopping the rest. The namespace
    wait has no deadline: the delete is re-issued on every pass because an
    admission guard may reject any single attempt.
    """
    namespace = params.test_namespace
    log.info(f"🔥 [{k8s.cluster_name}] Deleting connectivity check deployments...", k8s.cluster_name)

    deleted = 0
    for kind, name in teardown_objects(params):
        if await _delete_quietly(k8s, kind, namespace, name, log):
            deleted += 1
    await _delete_quietly(k8s, KIND_NAMESPACE, namespace, namespace, log)
    log.debug(f"Requested deletion of {deleted} objects in {namespace}", k8s.cluster_name)

    try:
        await k8s.get_object(KIND_NAMESPACE, namespace, namespace)
    except ApiException as e:
        if is_not_found(e):
            return
        raise

    log.info(f"⌛ [{k8s.cluster_name}] Waiting for namespace {namespace} to disappear", k8s.cluster_name)

    async def namespace_gone():
        await _delete_quietly(k8s, KIND_NAMESPACE, namespace, namespace, log)
        try:
            await k8s.get_object(KIND_NAMESPACE, namespace, namespace)
        except ApiException as e:
            if is_not_found(e):
                return
            raise NotReadyError(f"unable to read namespace {namespace}: {e.status} {e.reason}") from e
        raise NotReadyError(f"namespace {namespace} still exists")

    await poll_until(namespace_gone, interval=NAMESPACE_DELETE_INTERVAL, deadline=Deadline.never(),
                     description=f"namespace {namespace} to disappear")
    log.info(f"Namespace {namespace} deleted", k8s.cluster_name)
