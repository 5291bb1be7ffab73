"""
Command line entry point.
"""

import argparse
import asyncio
import sys

from .config import Config, Features, KNOWN_FEATURES, parse_node_selector
from .connectivity import ConnectivityTest
from .k8s import ClusterClients, K8sClient
from .log import ConsoleLog, setup_logging


def create_argument_parser():
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        description='Deploy and validate the Cilium connectivity test topology',
        epilog="""
The topology is created in the test namespace (and in the same namespace of
the destination cluster in multi-cluster mode), then checked until every
deployment, endpoint, DNS lookup, service, node port and ipcache entry has
converged.

Environment Variables:
  TEST_NAMESPACE (default: cilium-test), AGENT_NAMESPACE (default: kube-system)
  CURL_IMAGE, JSON_MOCK_IMAGE, DNS_TEST_SERVER_IMAGE, PERFORMANCE_IMAGE
  POD_READY_TIMEOUT (default: 300), SERVICE_READY_TIMEOUT (default: 30)
  CILIUM_ENDPOINT_TIMEOUT (default: 300), IPCACHE_TIMEOUT (default: 20)
  EXEC_TIMEOUT (default: 30)
  MULTI_CLUSTER, KUBE_CONTEXT, KUBECONFIG
  PERF, PERF_HOST_NET, SINGLE_NODE, NODE_SELECTOR
  FORCE_DEPLOY, SKIP_IPCACHE_CHECK, CLEANUP_ON_COMPLETION
  FEATURES (comma separated: """ + ', '.join(KNOWN_FEATURES) + """)
  LOG_FILE, LOG_LEVEL
  K8S_VERIFY, OCP_API_VERIFY, VERIFY_SSL, K8S_CA_CERT
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument('--test-namespace',
                        help='Namespace for the test topology')
    parser.add_argument('--agent-namespace',
                        help='Namespace of the Cilium agent pods')
    parser.add_argument('--context',
                        help='Kubernetes context of the source cluster')
    parser.add_argument('--multi-cluster', metavar='CONTEXT',
                        help='Kubernetes context of the destination cluster')

    parser.add_argument('--curl-image')
    parser.add_argument('--json-mock-image')
    parser.add_argument('--dns-test-server-image')
    parser.add_argument('--performance-image')

    parser.add_argument('--pod-ready-timeout', type=float,
                        help='Seconds to wait for deployments to become ready')
    parser.add_argument('--service-ready-timeout', type=float,
                        help='Seconds to wait for each service and node port')
    parser.add_argument('--cilium-endpoint-timeout', type=float,
                        help='Seconds to wait for each CiliumEndpoint')
    parser.add_argument('--ipcache-timeout', type=float,
                        help='Seconds to wait for DNS and ipcache convergence')
    parser.add_argument('--exec-timeout', type=float,
                        help='Upper bound for a single command run in a pod')

    parser.add_argument('--perf', action='store_true',
                        help='Deploy the performance topology instead of the echo topology')
    parser.add_argument('--perf-host-net', action='store_true',
                        help='Use host networking for the performance topology')
    parser.add_argument('--single-node', action='store_true',
                        help='Do not place pods on a second node')
    parser.add_argument('--node-selector', metavar='KEY=VALUE[,KEY=VALUE]',
                        help='Node selector for the performance pods')

    parser.add_argument('--force-deploy', action='store_true',
                        help='Delete any existing topology before deploying')
    parser.add_argument('--skip-ipcache-check', action='store_true',
                        help='Do not check pod identities in the agent ipcache')
    parser.add_argument('--cleanup', action='store_true',
                        help='Delete the topology once validation succeeds')
    parser.add_argument('--enable-feature', action='append', default=[], metavar='NAME',
                        choices=KNOWN_FEATURES,
                        help='Treat a cluster feature as enabled (repeatable)')

    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    parser.add_argument('--log-file',
                        help='Log file path')
    parser.add_argument('--verify-ssl', action='store_true',
                        help='Force SSL verification of the Kubernetes API')

    return parser


def apply_overrides(config: Config, args) -> Config:
    """Override config with CLI arguments"""
    if args.test_namespace is not None:
        config.test_namespace = args.test_namespace
    if args.agent_namespace is not None:
        config.agent_namespace = args.agent_namespace
    if args.context is not None:
        config.context = args.context
    if args.multi_cluster is not None:
        config.multi_cluster = args.multi_cluster

    # Images
    if args.curl_image is not None:
        config.curl_image = args.curl_image
    if args.json_mock_image is not None:
        config.json_mock_image = args.json_mock_image
    if args.dns_test_server_image is not None:
        config.dns_test_server_image = args.dns_test_server_image
    if args.performance_image is not None:
        config.performance_image = args.performance_image

    # Timeouts
    if args.pod_ready_timeout is not None:
        config.pod_ready_timeout = args.pod_ready_timeout
    if args.service_ready_timeout is not None:
        config.service_ready_timeout = args.service_ready_timeout
    if args.cilium_endpoint_timeout is not None:
        config.cilium_endpoint_timeout = args.cilium_endpoint_timeout
    if args.ipcache_timeout is not None:
        config.ipcache_timeout = args.ipcache_timeout
    if args.exec_timeout is not None:
        config.exec_timeout = args.exec_timeout

    # Scenario
    if args.perf:
        config.perf = True
    if args.perf_host_net:
        config.perf_host_net = True
    if args.single_node:
        config.single_node = True
    if args.node_selector is not None:
        config.node_selector = parse_node_selector(args.node_selector)

    if args.force_deploy:
        config.force_deploy = True
    if args.skip_ipcache_check:
        config.skip_ipcache_check = True
    if args.cleanup:
        config.cleanup_on_completion = True
    for name in args.enable_feature:
        if name not in config.enabled_features:
            config.enabled_features.append(name)

    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file
    if args.verify_ssl:
        config.k8s_verify_ssl = True
    return config


async def main(argv=None):
    """Main execution function"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = apply_overrides(Config(), args)
    except ValueError as e:
        parser.error(str(e))

    setup_logging(config)
    log = ConsoleLog()

    try:
        src = K8sClient.from_config(config, context=config.context, log=log)
        dst = None
        if config.is_multi_cluster:
            dst = K8sClient.from_config(config, context=config.multi_cluster, log=log)
        clients = ClusterClients(src, dst)

        features = Features.from_names(config.enabled_features)
        await ConnectivityTest(config, features, clients, log).run()
    except KeyboardInterrupt:
        log.warn("Connectivity check interrupted", "MAIN")
        sys.exit(1)
    except Exception as e:
        log.error(f"Connectivity check failed: {e}", "MAIN")
        sys.exit(1)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(130)
