"""
Migration status ledger
Persisted cross-run record of migrated resources, generated test hostnames and the run mode
"""

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from kubernetes import client

from .config import KUBE_SYSTEM, STATUS_CONFIGMAP_NAME
from .errors import MigrationModeMismatchError
from .kube_client import KubeClient
from .model import MigratedResource

logger = logging.getLogger(__name__)

SCHEMA_VERSION = '1'

LAST_UPDATED_KEY = 'last-updated-timestamp'
MIGRATED_RESOURCES_KEY = 'migrated-resources'
SUBDOMAIN_MAP_KEY = 'subdomain-map'
MIGRATION_MODE_KEY = 'migration-mode'
SCHEMA_VERSION_KEY = 'schema-version'


class LedgerFormatError(ValueError):
    """Persisted ledger data could not be decoded"""


@dataclass(frozen=True)
class LedgerRecord:
    mode: str = ''
    migrated_resources: List[MigratedResource] = field(default_factory=list)
    subdomain_map: Dict[str, str] = field(default_factory=dict)
    last_updated: str = ''
    schema_version: str = SCHEMA_VERSION

    def to_data(self) -> Dict[str, str]:
        return {
            SCHEMA_VERSION_KEY: self.schema_version,
            LAST_UPDATED_KEY: self.last_updated,
            MIGRATED_RESOURCES_KEY: json.dumps([r.to_dict() for r in self.migrated_resources]),
            SUBDOMAIN_MAP_KEY: json.dumps(self.subdomain_map, sort_keys=True),
            MIGRATION_MODE_KEY: self.mode,
        }

    @classmethod
    def from_data(cls, data: Optional[Mapping[str, str]]) -> 'LedgerRecord':
        """Decode ConfigMap data, records written before versioning count as version 1"""
        data = data or {}
        version = data.get(SCHEMA_VERSION_KEY) or SCHEMA_VERSION
        if version != SCHEMA_VERSION:
            raise LedgerFormatError(f"unsupported ledger schema version '{version}'")
        try:
            resources = json.loads(data.get(MIGRATED_RESOURCES_KEY) or '[]')
            subdomains = json.loads(data.get(SUBDOMAIN_MAP_KEY) or '{}')
        except json.JSONDecodeError as e:
            raise LedgerFormatError(f"ledger data is not valid JSON: {e}") from e
        return cls(
            mode=data.get(MIGRATION_MODE_KEY, ''),
            migrated_resources=[MigratedResource.from_dict(r) for r in resources or []],
            subdomain_map=dict(subdomains or {}),
            last_updated=data.get(LAST_UPDATED_KEY, ''),
            schema_version=version,
        )


def check_mode(record: LedgerRecord, mode: str):
    if record.mode and record.mode != mode:
        raise MigrationModeMismatchError(record.mode, mode)


def merge_record(existing: LedgerRecord, mode: str, new_entries: List[MigratedResource],
                 subdomain_delta: Optional[Mapping[str, str]], timestamp: str) -> LedgerRecord:
    """Append entries and merge the subdomain map into a new record"""
    check_mode(existing, mode)
    subdomain_map = dict(existing.subdomain_map)
    subdomain_map.update(subdomain_delta or {})
    return replace(
        existing,
        mode=mode,
        migrated_resources=list(existing.migrated_resources) + list(new_entries),
        subdomain_map=subdomain_map,
        last_updated=timestamp,
        schema_version=SCHEMA_VERSION,
    )


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


class MigrationStatusLedger:
    """Stores the ledger in the kube-system/ibm-ingress-migration-status ConfigMap"""

    def __init__(self, kube: KubeClient, name: str = STATUS_CONFIGMAP_NAME, namespace: str = KUBE_SYSTEM):
        self.kube = kube
        self.name = name
        self.namespace = namespace

    def _config_map(self) -> Optional[client.V1ConfigMap]:
        return self.kube.get_config_map(self.name, self.namespace)

    def read(self) -> LedgerRecord:
        config_map = self._config_map()
        if config_map is None:
            return LedgerRecord()
        return LedgerRecord.from_data(config_map.data)

    def record(self, mode: str, new_entries: List[MigratedResource],
               subdomain_delta: Optional[Mapping[str, str]] = None) -> LedgerRecord:
        """Append entries to the persisted ledger, failing when the persisted mode differs"""
        config_map = self._config_map()
        existing = LedgerRecord.from_data(config_map.data if config_map is not None else None)
        merged = merge_record(existing, mode, new_entries, subdomain_delta, utc_timestamp())

        if config_map is None:
            config_map = client.V1ConfigMap(
                api_version='v1',
                kind='ConfigMap',
                metadata=client.V1ObjectMeta(name=self.name, namespace=self.namespace),
                data=merged.to_data(),
            )
            self.kube.create_or_update_config_map(config_map)
        else:
            config_map.data = {**(config_map.data or {}), **merged.to_data()}
            self.kube.update_config_map(config_map)

        logger.info(f"Recorded {len(new_entries)} migrated resource(s) in {self.namespace}/{self.name}")
        return merged

    def delete(self):
        self.kube.delete_config_map(self.name, self.namespace)
        logger.info(f"Reset migration status {self.namespace}/{self.name}")
