"""
Controller ConfigMap parameter parsers
Each parser maps one legacy parameter to (community key, community value, warning)
"""

from typing import Callable, Dict, Tuple

from . import messages
from .annotations import parse_time_with_units


ParameterResult = Tuple[str, str, str]

IGNORED_PARAMETERS = (
    # port allowlists are consumed by the TCP port migration
    'public-ports',
    'private-ports',
    'vts-status-zone-size',
    'ingress-resource-creation-rate',
    'ingress-resource-timeout',
)


def _passthrough(key: str) -> Callable[[str, Dict[str, str]], ParameterResult]:
    def parse(value: str, _data: Dict[str, str]) -> ParameterResult:
        return key, value, ''
    return parse


def parse_keep_alive(value: str, _data: Dict[str, str]) -> ParameterResult:
    return 'keep-alive', str(parse_time_with_units(value)), ''


def parse_ssl_dhparam(_value: str, _data: Dict[str, str]) -> ParameterResult:
    return '', '', messages.SSL_DHPARAM_FILE


def parse_access_log_buffering(value: str, data: Dict[str, str]) -> ParameterResult:
    if value != 'true':
        return '', '', ''
    params = []
    if data.get('buffer-size'):
        params.append(f"buffer={data['buffer-size']}")
    if data.get('flush-interval'):
        params.append(f"flush={data['flush-interval']}")
    if not params:
        return '', '', ''
    return 'access-log-params', ','.join(params), ''


def parse_consumed(_value: str, _data: Dict[str, str]) -> ParameterResult:
    """buffer-size and flush-interval only take effect through access-log-buffering"""
    return '', '', ''


PARAMETER_PARSERS: Dict[str, Callable[[str, Dict[str, str]], ParameterResult]] = {
    'ssl-ciphers': _passthrough('ssl-ciphers'),
    'ssl-protocols': _passthrough('ssl-protocols'),
    'keep-alive-requests': _passthrough('keep-alive-requests'),
    'keep-alive': parse_keep_alive,
    'ssl-dhparam-file': parse_ssl_dhparam,
    'access-log-buffering': parse_access_log_buffering,
    'buffer-size': parse_consumed,
    'flush-interval': parse_consumed,
    'server-names-hash-bucket-size': _passthrough('server-name-hash-bucket-size'),
    'server-names-hash-max-size': _passthrough('server-name-hash-max-size'),
}
