"""
Ingress migration handler
Runs the resolve, split, render, write and record steps for every legacy Ingress of the cluster
"""

import logging
from typing import Dict, List, Optional, Set, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from . import alb_merger, messages
from .config import (
    INGRESS_CLASS_ANNOTATION,
    INGRESS_KIND,
    KUBE_SYSTEM,
    MODE_TEST,
    PRIVATE_INGRESS_CLASS,
    PUBLIC_INGRESS_CLASS,
    TEST_INGRESS_CLASS,
    RunConfig,
)
from .annotations import ALB_ID
from .errors import MigrationError, MigrationFailedError, ResourceMigrationError, RunAbortedError, TCPPortsError
from .kube_client import KubeClient
from .ledger import MigrationStatusLedger, check_mode
from .model import ALBSpecificData, MigratedResource
from .renderer import render
from .resolver import ConfigurationResolver
from .secret_canonicalizer import SecretCanonicalizer
from .splitter import IngressSplitter
from .tcp_ports import TCPPortsHandler

logger = logging.getLogger(__name__)

SYSTEM_INGRESSES = ('alb-default-server', 'alb-health', 'k8s-alb-health')
MIGRATED_INGRESS_CLASSES = (PUBLIC_INGRESS_CLASS, PRIVATE_INGRESS_CLASS, TEST_INGRESS_CLASS)


def skip_reason(ingress: client.V1Ingress, mode: str) -> Optional[str]:
    """Why an Ingress is not migrated, None when it is"""
    metadata = ingress.metadata
    annotations = metadata.annotations or {}

    if metadata.namespace == KUBE_SYSTEM and metadata.name in SYSTEM_INGRESSES:
        return "system Ingress of the legacy controller"

    ingress_class = annotations.get(INGRESS_CLASS_ANNOTATION)
    if not ingress_class and ingress.spec is not None:
        ingress_class = ingress.spec.ingress_class_name
    if ingress_class in MIGRATED_INGRESS_CLASSES:
        return f"already has the '{ingress_class}' ingress class"

    if mode == MODE_TEST and 'private' in annotations.get(ALB_ID, ''):
        return f"selects a private ALB, which is not migrated in '{MODE_TEST}' mode"
    return None


class IngressMigrationHandler:
    """Migrates all legacy Ingress resources of one run"""

    def __init__(self, kube: KubeClient, run_config: RunConfig, ledger: Optional[MigrationStatusLedger] = None):
        self.kube = kube
        self.run_config = run_config
        self.ledger = ledger or MigrationStatusLedger(kube)
        self.resolver = ConfigurationResolver(SecretCanonicalizer(kube))
        self.tcp_ports = TCPPortsHandler(kube, run_config)

        self.alb_data: ALBSpecificData = {}
        # namespace -> generated Ingress names
        self.used_names: Dict[str, Set[str]] = {}

    def migrate(self) -> List[MigratedResource]:
        """
        Migrate every Ingress and append the results to the status ledger.

        Per-resource failures are collected and raised together as
        MigrationFailedError after the ledger is written. A RunAbortedError
        stops the batch, the resources migrated so far are still recorded.
        """
        mode = self.run_config.mode
        existing = self.ledger.read()
        check_mode(existing, mode)

        splitter = IngressSplitter(self.run_config, existing.subdomain_map)
        entries: List[MigratedResource] = []
        subdomain_delta: Dict[str, str] = {}
        errors: List[Exception] = []

        try:
            for ingress in self.kube.list_ingresses():
                name = ingress.metadata.name
                namespace = ingress.metadata.namespace

                reason = skip_reason(ingress, mode)
                if reason:
                    logger.info(f"Skipping Ingress {namespace}/{name}: {reason}")
                    continue

                logger.info(f"Migrating Ingress {namespace}/{name}")
                try:
                    entry, delta, tcp_error = self._migrate_ingress(ingress, splitter)
                except RunAbortedError:
                    raise
                except (MigrationError, ApiException) as e:
                    logger.error(f"Failed to migrate Ingress {namespace}/{name}: {e}")
                    errors.append(e if isinstance(e, ResourceMigrationError)
                                  else ResourceMigrationError(namespace, name, e))
                    continue
                entries.append(entry)
                subdomain_delta.update(delta)
                if tcp_error is not None:
                    errors.append(ResourceMigrationError(namespace, name, tcp_error))
        except RunAbortedError as e:
            logger.error(f"Migration aborted: {e}")
            self.ledger.record(mode, entries, subdomain_delta)
            raise

        self.ledger.record(mode, entries, subdomain_delta)
        logger.info(f"Migrated {len(entries)} Ingress resource(s), {len(errors)} failed")
        if errors:
            raise MigrationFailedError(errors)
        return entries

    def _migrate_ingress(self, ingress: client.V1Ingress,
                         splitter: IngressSplitter) -> Tuple[MigratedResource, Dict[str, str], Optional[Exception]]:
        """
        Returns the ledger entry, the generated test hostnames and the error of
        the TCP ConfigMap step. The Ingresses are already written when that step
        fails, so the entry is kept.
        """
        name = ingress.metadata.name
        namespace = ingress.metadata.namespace

        resolution = self.resolver.resolve(ingress, self.run_config.mode, self.kube.ingress_enhancements_enabled)
        if resolution.errors:
            if len(resolution.errors) == 1:
                raise ResourceMigrationError(namespace, name, resolution.errors[0])
            raise ResourceMigrationError(namespace, name, MigrationError(
                '; '.join(str(e) for e in resolution.errors)))

        warnings = list(resolution.warnings)
        units, delta = splitter.split(resolution.config, self.used_names.setdefault(namespace, set()))
        alb_merger.merge(self.alb_data, resolution.tcp_ports, resolution.alb_id_list)

        migrated_as = []
        write_failed = False
        for unit in units:
            try:
                self.kube.create_or_update_ingress(render(unit))
            except ApiException as e:
                logger.error(f"Failed to write Ingress {namespace}/{unit.name}: {e.reason}", exc_info=True)
                write_failed = True
                continue
            migrated_as.append(f"{INGRESS_KIND}/{unit.name}")
        if write_failed:
            warnings.append(messages.ERROR_CREATING_INGRESS_RESOURCES)

        tcp_error = None
        try:
            tcp_migrated_as, tcp_warnings = self.tcp_ports.handle(resolution.tcp_ports, resolution.alb_id_list)
            migrated_as += tcp_migrated_as
            warnings += tcp_warnings
        except (TCPPortsError, ApiException) as e:
            logger.error(f"Failed to write the TCP ports of Ingress {namespace}/{name}: {e}")
            warnings.append(messages.ERROR_CREATING_TCP_CONFIGMAPS)
            tcp_error = e

        return MigratedResource(
            kind=INGRESS_KIND,
            name=name,
            namespace=namespace,
            migrated_as=migrated_as,
            warnings=warnings,
        ), delta, tcp_error
