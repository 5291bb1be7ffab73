"""
Parsing of the agent's ``cilium bpf ipcache list -o json`` output.

The dump maps a host prefix to one or more entry strings::

    {"10.0.1.15/32": ["identity=17345 encryptkey=0 tunnelendpoint=0.0.0.0"]}

A snapshot is only valid for the attempt that fetched it.
"""

import ipaddress
import json
import re
from typing import Dict, List

from .errors import NotReadyError

IDENTITY_RE = re.compile(r'identity=(\d+)')

IPCACHE_DUMP_COMMAND = ["cilium", "bpf", "ipcache", "list", "-o", "json"]


def host_prefix(ip: str) -> str:
    addr = ipaddress.ip_address(ip)
    return f"{addr}/{addr.max_prefixlen}"


class IPCache:
    def __init__(self, entries: Dict[str, List[str]]):
        self.entries = entries

    @classmethod
    def from_json(cls, raw: str) -> 'IPCache':
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise NotReadyError(f"failed to unmarshal Cilium ipcache stdout json: {e}") from e
        if not isinstance(data, dict):
            raise NotReadyError(f"unexpected ipcache dump type {type(data).__name__}")

        entries = {}
        for prefix, values in data.items():
            if isinstance(values, str):
                values = [values]
            entries[prefix] = [str(v) for v in (values or [])]
        return cls(entries)

    def identity_for(self, ip: str) -> int:
        """Identity of the host entry for ``ip``; NotReadyError if absent"""
        prefix = host_prefix(ip)
        for value in self.entries.get(prefix, []):
            match = IDENTITY_RE.search(value)
            if match:
                return int(match.group(1))
        raise NotReadyError(f"no identity for {prefix} in ipcache")

    def find_pod_id(self, pod) -> int:
        """Identity of ``pod``; every one of its addresses must be present"""
        addresses = pod.addresses()
        if not addresses:
            raise NotReadyError(f"pod {pod.name} has no IP address yet")
        identity = 0
        for ip in addresses:
            identity = self.identity_for(ip)
        return identity
