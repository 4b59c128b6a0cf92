"""
Kubernetes resource client
CRUD verbs on Ingress, ConfigMap and Secret objects for one migration run.
In read-only mode writes never reach the cluster, they are kept in memory and
served back to later reads. Recorded objects are dumped as YAML after the run.
"""

import logging
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)

ENHANCEMENTS_MIN_VERSION = (1, 18)


def load_kube_config(kubeconfig: Optional[str] = None):
    """Load cluster credentials from a kubeconfig file or the service account"""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def current_context(kubeconfig: Optional[str] = None) -> str:
    try:
        _, active = config.list_kube_config_contexts(config_file=kubeconfig)
    except (config.ConfigException, OSError):
        return ''
    return (active or {}).get('name', '')


def server_supports_enhancements(version_info) -> bool:
    """Path types on Ingress paths are available from Kubernetes 1.18"""
    try:
        major = int(''.join(c for c in version_info.major if c.isdigit()))
        minor = int(''.join(c for c in version_info.minor if c.isdigit()))
    except (TypeError, ValueError):
        return False
    return (major, minor) >= ENHANCEMENTS_MIN_VERSION


class KubeClient:
    """Access to the cluster objects touched by the migration"""

    def __init__(self, core_v1: client.CoreV1Api, networking_v1: client.NetworkingV1Api,
                 read_only: bool = True, record_resources: bool = True,
                 ingress_enhancements_enabled: bool = True):
        self.v1 = core_v1
        self.networking_v1 = networking_v1
        self.read_only = read_only
        self.record_resources = record_resources
        self.ingress_enhancements_enabled = ingress_enhancements_enabled

        # kind -> namespace -> name -> object
        self.recorded: Dict[str, Dict[str, Dict[str, object]]] = {
            'Ingress': {},
            'ConfigMap': {},
            'Secret': {},
        }
        # ConfigMaps deleted during a read-only run
        self.deleted = set()

    @classmethod
    def from_config(cls, kubeconfig: Optional[str] = None, read_only: bool = True,
                    record_resources: bool = True) -> 'KubeClient':
        load_kube_config(kubeconfig)
        version_info = client.VersionApi().get_code()
        enhancements = server_supports_enhancements(version_info)
        logger.info(f"Connected to Kubernetes {version_info.git_version}, ingress enhancements enabled: {enhancements}")
        return cls(
            core_v1=client.CoreV1Api(),
            networking_v1=client.NetworkingV1Api(),
            read_only=read_only,
            record_resources=record_resources,
            ingress_enhancements_enabled=enhancements,
        )

    def _record(self, kind: str, obj):
        if self.read_only or self.record_resources:
            namespace = obj.metadata.namespace
            self.recorded[kind].setdefault(namespace, {})[obj.metadata.name] = obj

    def _recorded(self, kind: str, name: str, namespace: str):
        if not self.read_only:
            return None
        return self.recorded[kind].get(namespace, {}).get(name)

    def _forget(self, kind: str, name: str, namespace: str):
        self.recorded[kind].get(namespace, {}).pop(name, None)

    # Ingress

    def list_ingresses(self) -> List[client.V1Ingress]:
        """List Ingress resources across all namespaces"""
        try:
            return list(self.networking_v1.list_ingress_for_all_namespaces().items)
        except ApiException as e:
            logger.error(f"Failed to list Ingress resources: {e.reason}", exc_info=True)
            raise

    def create_or_update_ingress(self, ingress: client.V1Ingress):
        name = ingress.metadata.name
        namespace = ingress.metadata.namespace
        if not self.read_only:
            try:
                self.networking_v1.create_namespaced_ingress(namespace=namespace, body=ingress)
                logger.info(f"Created Ingress {namespace}/{name}")
            except ApiException as e:
                if e.status != 409:
                    raise
                self.networking_v1.replace_namespaced_ingress(name=name, namespace=namespace, body=ingress)
                logger.info(f"Updated Ingress {namespace}/{name}")
        self._record('Ingress', ingress)

    # ConfigMap

    def get_config_map(self, name: str, namespace: str) -> Optional[client.V1ConfigMap]:
        """Get a ConfigMap, None when it does not exist"""
        recorded = self._recorded('ConfigMap', name, namespace)
        if recorded is not None:
            return recorded
        if self.read_only and (namespace, name) in self.deleted:
            return None
        try:
            return self.v1.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def create_config_map(self, config_map: client.V1ConfigMap) -> bool:
        """Create a ConfigMap, False when it already exists"""
        name = config_map.metadata.name
        namespace = config_map.metadata.namespace
        if self.read_only:
            if self.get_config_map(name, namespace) is not None:
                return False
            self.deleted.discard((namespace, name))
        else:
            try:
                self.v1.create_namespaced_config_map(namespace=namespace, body=config_map)
            except ApiException as e:
                if e.status == 409:
                    return False
                raise
        logger.info(f"Created ConfigMap {namespace}/{name}")
        self._record('ConfigMap', config_map)
        return True

    def update_config_map(self, config_map: client.V1ConfigMap):
        name = config_map.metadata.name
        namespace = config_map.metadata.namespace
        if not self.read_only:
            self.v1.replace_namespaced_config_map(name=name, namespace=namespace, body=config_map)
        logger.info(f"Updated ConfigMap {namespace}/{name}")
        self._record('ConfigMap', config_map)

    def create_or_update_config_map(self, config_map: client.V1ConfigMap):
        if not self.create_config_map(config_map):
            self.update_config_map(config_map)

    def delete_config_map(self, name: str, namespace: str):
        """Delete a ConfigMap, absence is not an error"""
        self._forget('ConfigMap', name, namespace)
        if self.read_only:
            self.deleted.add((namespace, name))
            return
        try:
            self.v1.delete_namespaced_config_map(name=name, namespace=namespace)
            logger.info(f"Deleted ConfigMap {namespace}/{name}")
        except ApiException as e:
            if e.status != 404:
                raise

    # Secret

    def get_secret(self, name: str, namespace: str) -> Optional[client.V1Secret]:
        recorded = self._recorded('Secret', name, namespace)
        if recorded is not None:
            return recorded
        try:
            return self.v1.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def update_secret(self, secret: client.V1Secret):
        name = secret.metadata.name
        namespace = secret.metadata.namespace
        if not self.read_only:
            self.v1.replace_namespaced_secret(name=name, namespace=namespace, body=secret)
        logger.info(f"Updated Secret {namespace}/{name}")
        self._record('Secret', secret)
