"""
Ingress migrator command line
Migrates the legacy controller ConfigMap and Ingress resources of the current cluster
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from kubernetes import config as kube_config
from kubernetes.client.rest import ApiException

from . import __version__
from .config import ConfigError, load_run_config
from .configmap_handler import ConfigMapMigrationHandler
from .errors import MigrationError, MigrationFailedError
from .ingress_handler import IngressMigrationHandler
from .kube_client import KubeClient, current_context
from .ledger import LedgerFormatError, MigrationStatusLedger, check_mode
from .report import dump_resources, print_status

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = 'migration.log'

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='ingress-migrator',
        description='Migrate IBM Cloud Kubernetes Service Ingress resources to the Kubernetes community Ingress controller',
    )
    parser.add_argument('--outputdir', required=True,
                        help='directory where the migration log and the migrated resources are saved')
    parser.add_argument('--reset-status', action='store_true',
                        help='delete the migration status of previous runs before migrating')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def setup_logging(output_dir: str):
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(os.path.join(output_dir, LOG_FILE_NAME)),
        ],
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    os.makedirs(args.outputdir, exist_ok=True)
    setup_logging(args.outputdir)

    try:
        run_config = load_run_config(args.outputdir, reset_status=args.reset_status)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    logger.info(f"Starting ingress migrator in '{run_config.mode}' mode, read-only: {run_config.read_only}")

    try:
        kube = KubeClient.from_config(run_config.kubeconfig, run_config.read_only, run_config.dump_resources)
    except kube_config.ConfigException as e:
        logger.error(f"Failed to load Kubernetes configuration: {e}")
        return EXIT_CONFIG

    ledger = MigrationStatusLedger(kube)
    status = EXIT_OK
    try:
        if run_config.reset_status:
            ledger.delete()
        check_mode(ledger.read(), run_config.mode)

        ConfigMapMigrationHandler(kube, run_config, ledger).migrate()
        logger.info("Migrated the controller ConfigMap parameters")

        IngressMigrationHandler(kube, run_config, ledger).migrate()
        logger.info("Migrated the Ingress resources")
    except MigrationFailedError as e:
        logger.error(f"Migration finished with errors: {e}")
        for error in e.errors:
            logger.error(f"  {error}")
        status = EXIT_FAILED
    except (MigrationError, LedgerFormatError, ApiException) as e:
        logger.error(f"Migration aborted: {e}", exc_info=True)
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("[shutdown] Keyboard interrupt received, stopping migration")
        return EXIT_FAILED

    if run_config.dump_resources:
        dump_resources(run_config.output_dir, kube.recorded)
    print_status(
        run_config.output_dir,
        current_context(run_config.kubeconfig),
        run_config.mode,
        ledger.read().migrated_resources,
    )
    return status
