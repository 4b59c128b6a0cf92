"""
Controller ConfigMap migration
Translates kube-system/ibm-cloud-provider-ingress-cm into the community controller ConfigMap
"""

import logging
from typing import Dict, Optional

from kubernetes import client

from . import messages
from .config import (
    CONFIGMAP_KIND,
    IKS_CONFIGMAP_NAME,
    K8S_CONFIGMAP_NAME,
    KUBE_SYSTEM,
    TEST_K8S_CONFIGMAP_NAME,
    RunConfig,
)
from .configmap_parsers import IGNORED_PARAMETERS, PARAMETER_PARSERS
from .errors import AnnotationParseError, MigrationError
from .kube_client import KubeClient
from .ledger import MigrationStatusLedger
from .model import MigratedResource

logger = logging.getLogger(__name__)


def convert_parameters(data: Dict[str, str]):
    """Returns the community parameters and the warnings of a legacy ConfigMap's data"""
    converted = {}
    warnings = []
    for key in sorted(data):
        if key in IGNORED_PARAMETERS:
            continue
        parser = PARAMETER_PARSERS.get(key)
        if parser is None:
            logger.warning(f"ConfigMap parameter {key} has no community equivalent")
            warnings.append(messages.UNSUPPORTED_CM_PARAMETER.format(key))
            continue
        try:
            target_key, target_value, warning = parser(data[key], data)
        except AnnotationParseError as e:
            logger.error(f"Failed to process ConfigMap parameter {key}: {e}")
            warnings.append(messages.ERROR_PROCESSING_CM_PARAMETER.format(key))
            continue
        if target_key:
            converted[target_key] = target_value
        if warning:
            warnings.append(warning)
    return converted, warnings


class ConfigMapMigrationHandler:
    """Migrates the legacy controller ConfigMap and records the result in the status ledger"""

    def __init__(self, kube: KubeClient, run_config: RunConfig, ledger: Optional[MigrationStatusLedger] = None):
        self.kube = kube
        self.run_config = run_config
        self.ledger = ledger or MigrationStatusLedger(kube)

    def migrate(self) -> Optional[MigratedResource]:
        community = self.kube.get_config_map(K8S_CONFIGMAP_NAME, KUBE_SYSTEM)
        if community is None:
            raise MigrationError(f"ConfigMap {KUBE_SYSTEM}/{K8S_CONFIGMAP_NAME} not found, "
                                 f"the community Ingress controller must be deployed before migration")

        legacy = self.kube.get_config_map(IKS_CONFIGMAP_NAME, KUBE_SYSTEM)
        if legacy is None:
            logger.info(f"ConfigMap {KUBE_SYSTEM}/{IKS_CONFIGMAP_NAME} not found, skipping ConfigMap migration")
            return None

        parameters, warnings = convert_parameters(legacy.data or {})

        if self.run_config.is_test_mode:
            target = TEST_K8S_CONFIGMAP_NAME
            self.kube.create_or_update_config_map(client.V1ConfigMap(
                api_version='v1',
                kind='ConfigMap',
                metadata=client.V1ObjectMeta(name=target, namespace=KUBE_SYSTEM),
                data=parameters,
            ))
        else:
            target = K8S_CONFIGMAP_NAME
            community.data = {**(community.data or {}), **parameters}
            self.kube.update_config_map(community)
        logger.info(f"Migrated {len(parameters)} parameter(s) of {IKS_CONFIGMAP_NAME} to {KUBE_SYSTEM}/{target}")

        entry = MigratedResource(
            kind=CONFIGMAP_KIND,
            name=IKS_CONFIGMAP_NAME,
            namespace=KUBE_SYSTEM,
            migrated_as=[f"{CONFIGMAP_KIND}/{target}"],
            warnings=warnings,
        )
        self.ledger.record(self.run_config.mode, [entry])
        return entry

