"""
Resource splitter
Expands a resolved IngressConfig into one Ingress per backend location plus one host-level server Ingress
"""

import logging
import re
from typing import Dict, List, Mapping, Optional, Set, Tuple

from . import subdomains
from .config import RunConfig
from .model import IngressConfig, SingleIngressConfig, TLSConfig

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 253
SERVER_SUFFIX = 'server'

_NON_ALNUM = re.compile(r'[^a-zA-Z0-9]+')


def server_unit_name(ingress_name: str) -> str:
    return f"{ingress_name}-{SERVER_SUFFIX}"


def reserve_name(base: str, used: Set[str]) -> str:
    """base, or base with a -N suffix when taken, truncated to a valid name and added to used"""
    base = base[:MAX_NAME_LENGTH].rstrip('-')
    name = base
    index = 0
    while name in used:
        suffix = f"-{index}"
        name = base[:MAX_NAME_LENGTH - len(suffix)].rstrip('-') + suffix
        index += 1
    used.add(name)
    return name


def generate_unique_name(ingress_name: str, service_name: str, path: str, used: Set[str]) -> str:
    """Deterministic, length-bounded name of a location Ingress, unique within used"""
    return reserve_name(f"{ingress_name}-{service_name}-{_NON_ALNUM.sub('', path)}".lower(), used)


def tls_secret_for(tls: list, host: str) -> str:
    """Secret of the first TLS entry listing host, '' when none does"""
    for entry in tls or []:
        if host in (entry.hosts or []):
            return entry.secret_name or ''
    return ''


class IngressSplitter:
    """Splits resolved configurations, test hostnames are taken from and added to subdomain_map"""

    def __init__(self, run_config: RunConfig, subdomain_map: Optional[Mapping[str, str]] = None):
        self.run_config = run_config
        self.subdomain_map: Dict[str, str] = dict(subdomain_map or {})

    def _host(self, host: str, delta: Dict[str, str]) -> Tuple[str, str]:
        """(generated or real hostname, TLS secret) of a host"""
        if not self.run_config.is_test_mode:
            return host, ''
        test_host = subdomains.allocate(self.run_config.test_domain, host, self.subdomain_map)
        if self.subdomain_map.get(host) != test_host:
            logger.info(f"Using test hostname {test_host} for {host}")
        self.subdomain_map[host] = test_host
        delta[host] = test_host
        return test_host, self.run_config.test_secret

    def split(self, config: IngressConfig, used_names: Set[str]) -> Tuple[List[SingleIngressConfig], Dict[str, str]]:
        """
        Returns the render-ready units, server unit first, and the
        {real host: test host} mapping generated for this resource.
        used_names holds the names already taken in the namespace during the run.
        """
        delta: Dict[str, str] = {}
        server_name = reserve_name(server_unit_name(config.name), used_names)

        locations = []
        host_names = []
        tls_by_secret: Dict[str, TLSConfig] = {}

        for server in config.servers:
            if self.run_config.is_test_mode:
                host, secret = self._host(server.host_name, delta)
            else:
                host, secret = server.host_name, tls_secret_for(config.tls, server.host_name)

            if host not in host_names:
                host_names.append(host)
            if secret:
                tls = tls_by_secret.setdefault(secret, TLSConfig(secret=secret))
                if host not in tls.host_names:
                    tls.host_names.append(host)

            for location in server.locations:
                locations.append(SingleIngressConfig(
                    name=generate_unique_name(config.name, location.service_name, location.path, used_names),
                    namespace=config.namespace,
                    ingress_class=config.ingress_class,
                    host_names=[host],
                    tls_configs=[TLSConfig(secret=secret, host_names=[host])] if secret else [],
                    path=location.path,
                    path_type=location.path_type,
                    service_name=location.service_name,
                    service_port=location.service_port,
                    location_annotations=location.annotations,
                ))

        server_unit = SingleIngressConfig(
            name=server_name,
            namespace=config.namespace,
            ingress_class=config.ingress_class,
            is_server=True,
            host_names=host_names,
            tls_configs=list(tls_by_secret.values()),
        )
        if config.servers:
            server_unit.server_annotations = config.servers[0].annotations

        logger.info(f"Split Ingress {config.namespace}/{config.name} into {len(locations)} location resource(s) "
                    f"and {server_name}")
        return [server_unit] + locations, delta
