"""
Secret canonicalizer
Finds certificate secrets across namespaces and adds the key names expected by
the community controller without overwriting existing content
"""

import logging
from typing import List, Tuple

from kubernetes import client

from . import messages
from .config import DEFAULT_NAMESPACE, SECURE_NAMESPACE
from .errors import SecretNotFoundError
from .kube_client import KubeClient

logger = logging.getLogger(__name__)

REFERENCE_SECRET_KEY = 'referenceSecret'

# source key -> key read by the community controller
CANONICAL_KEYS = (
    ('trusted.crt', 'ca.crt'),
    ('client.crt', 'tls.crt'),
    ('client.key', 'tls.key'),
)


def is_reference_secret(secret: client.V1Secret) -> bool:
    return REFERENCE_SECRET_KEY in (secret.data or {})


def secret_ref(secret: client.V1Secret) -> str:
    """Secret reference in the 'namespace/name' format of the community annotations"""
    return f"{secret.metadata.namespace}/{secret.metadata.name}"


class SecretCanonicalizer:
    """Multi-namespace secret lookup and non-destructive key normalization"""

    def __init__(self, kube: KubeClient):
        self.kube = kube

    def lookup(self, name: str, namespace: str) -> client.V1Secret:
        """
        Search order: the ingress namespace, the default namespace, the secure
        cert-store namespace. A reference secret found in the default namespace
        redirects to the cert-store namespace.
        """
        searched = []

        def find(ns):
            searched.append(ns)
            secret = self.kube.get_secret(name, ns)
            if secret is None:
                logger.info(f"Secret {name} not found in namespace {ns}")
            return secret

        secret = find(namespace)
        if secret is not None:
            if namespace != DEFAULT_NAMESPACE or not is_reference_secret(secret):
                return secret
            redirected = find(SECURE_NAMESPACE)
            if redirected is not None:
                return redirected

        if namespace != DEFAULT_NAMESPACE:
            secret = find(DEFAULT_NAMESPACE)
            if secret is not None:
                if not is_reference_secret(secret):
                    return secret
                redirected = find(SECURE_NAMESPACE)
                if redirected is not None:
                    return redirected

        if SECURE_NAMESPACE not in searched:
            secret = find(SECURE_NAMESPACE)
            if secret is not None:
                return secret

        logger.error(f"Secret {name} not found in namespaces {searched}")
        raise SecretNotFoundError(name, searched)

    def canonicalize(self, name: str, namespace: str) -> Tuple[client.V1Secret, List[str]]:
        """Look up a proxy SSL secret, copy its keys to the canonical names and write it back"""
        secret = self.lookup(name, namespace)
        warnings = []
        if secret.data is None:
            secret.data = {}

        for source, target in CANONICAL_KEYS:
            if source not in secret.data:
                continue
            if target not in secret.data:
                secret.data[target] = secret.data[source]
            elif secret.data[target] != secret.data[source]:
                logger.warning(f"Keys {source} and {target} differ in secret {secret_ref(secret)}, keeping {target}")
                warnings.append(messages.SSL_SERVICES_SECRET.format(
                    namespace=secret.metadata.namespace,
                    name=secret.metadata.name,
                    source=source,
                    target=target,
                ))

        self.kube.update_secret(secret)
        return secret, warnings
