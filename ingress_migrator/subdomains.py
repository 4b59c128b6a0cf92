"""
Test subdomain allocator
Generates the hostnames that replace real hosts in the test migration modes
"""

import secrets
import string
from typing import Mapping

from .errors import RandomSourceError

RANDOM_PREFIX_LENGTH = 8
RANDOM_ALPHABET = string.ascii_lowercase + string.digits
MAX_ATTEMPTS = 16


def random_string(length: int = RANDOM_PREFIX_LENGTH) -> str:
    """Lowercase alphanumeric random string"""
    try:
        return ''.join(secrets.choice(RANDOM_ALPHABET) for _ in range(length))
    except (OSError, NotImplementedError) as e:
        raise RandomSourceError(f"failed to generate random string: {e}") from e


def is_wildcard(host: str) -> bool:
    return host.split('.', 1)[0] == '*'


def allocate(base: str, host: str, existing: Mapping[str, str]) -> str:
    """
    Return the test hostname for host under base.

    A host that already has a test hostname under the same base keeps it.
    Wildcard hosts get '*.wc-N.<base>' with the smallest N not used by any
    value of existing; other hosts get an 8 character random prefix.
    """
    previous = existing.get(host)
    if previous and previous.endswith(f".{base}"):
        return previous

    used = set(existing.values())
    if is_wildcard(host):
        index = 0
        while f"*.wc-{index}.{base}" in used:
            index += 1
        return f"*.wc-{index}.{base}"

    for _ in range(MAX_ATTEMPTS):
        candidate = f"{random_string()}.{base}"
        if candidate not in used:
            return candidate
    raise RandomSourceError(f"could not generate an unused test hostname under {base}")
