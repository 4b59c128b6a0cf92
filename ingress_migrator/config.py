"""
Run configuration
Immutable settings of one migration run and the well-known cluster object names
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional


MODE_TEST = 'test'
MODE_TEST_WITH_PRIVATE = 'test-with-private'
MODE_PRODUCTION = 'production'
MODES = (MODE_TEST, MODE_TEST_WITH_PRIVATE, MODE_PRODUCTION)

KUBE_SYSTEM = 'kube-system'
DEFAULT_NAMESPACE = 'default'
SECURE_NAMESPACE = 'ibm-cert-store'

CONFIGMAP_KIND = 'ConfigMap'
INGRESS_KIND = 'Ingress'

IKS_CONFIGMAP_NAME = 'ibm-cloud-provider-ingress-cm'
K8S_CONFIGMAP_NAME = 'ibm-k8s-controller-config'
TEST_K8S_CONFIGMAP_NAME = 'ibm-k8s-controller-config-test'

STATUS_CONFIGMAP_NAME = 'ibm-ingress-migration-status'

INGRESS_CLASS_ANNOTATION = 'kubernetes.io/ingress.class'
PUBLIC_INGRESS_CLASS = 'public-iks-k8s-nginx'
PRIVATE_INGRESS_CLASS = 'private-iks-k8s-nginx'
TEST_INGRESS_CLASS = 'test'

GENERIC_TCP_CONFIGMAP_NAME = 'generic-k8s-ingress-tcp-ports'
TCP_CONFIGMAP_NAME_SUFFIX = '-k8s-ingress-tcp-ports'


class ConfigError(ValueError):
    """Invalid run configuration"""


@dataclass(frozen=True)
class RunConfig:
    """Settings passed explicitly to every component of a run"""
    mode: str = MODE_PRODUCTION
    read_only: bool = True
    dump_resources: bool = True
    test_domain: str = ''
    test_secret: str = ''
    output_dir: str = ''
    reset_status: bool = False
    kubeconfig: Optional[str] = None

    @property
    def is_test_mode(self) -> bool:
        return self.mode in (MODE_TEST, MODE_TEST_WITH_PRIVATE)

    def validate(self) -> 'RunConfig':
        if self.mode not in MODES:
            raise ConfigError(f"unknown migration mode '{self.mode}', expected one of {', '.join(MODES)}")
        if self.is_test_mode and (not self.test_domain or not self.test_secret):
            raise ConfigError(f"TEST_DOMAIN and TEST_SECRET must be set in '{self.mode}' mode")
        if not self.output_dir:
            raise ConfigError("output directory must be set")
        return self


def _env_flag(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def load_run_config(output_dir: str, reset_status: bool = False,
                    environ: Optional[Mapping[str, str]] = None) -> RunConfig:
    """Build the run configuration from environment variables and command line values"""
    if environ is None:
        environ = os.environ

    run_config = RunConfig(
        mode=environ.get('MIGRATION_MODE') or MODE_PRODUCTION,
        read_only=_env_flag(environ, 'READ_ONLY', True),
        dump_resources=_env_flag(environ, 'DUMP_RESOURCES', True),
        test_domain=environ.get('TEST_DOMAIN', ''),
        test_secret=environ.get('TEST_SECRET', ''),
        output_dir=output_dir or '',
        reset_status=reset_status,
        kubeconfig=environ.get('KUBECONFIG') or None,
    )
    return run_config.validate()
