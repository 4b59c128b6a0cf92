"""
TCP port ConfigMap writer
Writes the tcp-ports requests of a resource into the ALB-scoped TCP ConfigMaps,
limited to the ports the legacy controller exposes
"""

import logging
from typing import Dict, List, Tuple

from kubernetes import client

from . import messages
from .alb_merger import parse_alb_id_list
from .config import (
    CONFIGMAP_KIND,
    GENERIC_TCP_CONFIGMAP_NAME,
    IKS_CONFIGMAP_NAME,
    KUBE_SYSTEM,
    TCP_CONFIGMAP_NAME_SUFFIX,
    RunConfig,
)
from .errors import TCPPortsError
from .kube_client import KubeClient
from .model import TCPPortConfig

logger = logging.getLogger(__name__)


def tcp_config_map_name(alb_id: str) -> str:
    if not alb_id:
        return GENERIC_TCP_CONFIGMAP_NAME
    return f"{alb_id}{TCP_CONFIGMAP_NAME_SUFFIX}"


def allowlist_key(alb_id: str) -> str:
    return 'private-ports' if 'private' in alb_id else 'public-ports'


def tcp_port_warning(mode_is_test: bool, alb_id_list: str) -> str:
    if mode_is_test:
        return messages.TCP_PORTS_WITH_ALB_ID_TEST if alb_id_list else messages.TCP_PORTS_WITHOUT_ALB_ID_TEST
    return messages.TCP_PORTS_WITH_ALB_ID if alb_id_list else messages.TCP_PORTS_WITHOUT_ALB_ID


class TCPPortsHandler:
    """Writes TCP ConfigMaps for the ALBs selected by a resource"""

    def __init__(self, kube: KubeClient, run_config: RunConfig):
        self.kube = kube
        self.run_config = run_config

    def handle(self, tcp_ports: Dict[str, TCPPortConfig], alb_id_list: str) -> Tuple[List[str], List[str]]:
        """Returns the written ConfigMaps as 'ConfigMap/<name>' entries and the warnings"""
        migrated_as = []
        warnings = []
        if not tcp_ports:
            return migrated_as, warnings

        legacy = self.kube.get_config_map(IKS_CONFIGMAP_NAME, KUBE_SYSTEM)
        if legacy is None:
            raise TCPPortsError(f"ConfigMap {KUBE_SYSTEM}/{IKS_CONFIGMAP_NAME} not found, TCP ports cannot be migrated")
        legacy_data = legacy.data or {}

        for alb_id in parse_alb_id_list(alb_id_list):
            key = allowlist_key(alb_id)
            allowed = {port.strip() for port in legacy_data.get(key, '').split(';') if port.strip()}
            data = {port: cfg.target() for port, cfg in tcp_ports.items() if port in allowed}

            dropped = sorted(port for port in tcp_ports if port not in allowed)
            if dropped:
                logger.warning(f"TCP ports {dropped} are not in {key} of {IKS_CONFIGMAP_NAME}, skipping them for ALB '{alb_id}'")
                warnings.append(messages.TCP_PORTS_NOT_ALLOWED.format(ports=', '.join(dropped), key=key, alb=alb_id))
            if not data:
                continue

            name = tcp_config_map_name(alb_id)
            self._apply(name, data)
            migrated_as.append(f"{CONFIGMAP_KIND}/{name}")

        if migrated_as:
            warnings.append(tcp_port_warning(self.run_config.is_test_mode, alb_id_list))
        return migrated_as, warnings

    def _apply(self, name: str, data: Dict[str, str]):
        existing = self.kube.get_config_map(name, KUBE_SYSTEM)
        if existing is None:
            config_map = client.V1ConfigMap(
                api_version='v1',
                kind='ConfigMap',
                metadata=client.V1ObjectMeta(name=name, namespace=KUBE_SYSTEM),
                data=dict(data),
            )
            self.kube.create_or_update_config_map(config_map)
        else:
            existing.data = {**(existing.data or {}), **data}
            self.kube.update_config_map(existing)
        logger.info(f"Applied TCP ports {sorted(data)} to ConfigMap {KUBE_SYSTEM}/{name}")
