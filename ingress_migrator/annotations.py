"""
Legacy annotation parsers
Turn raw ingress.bluemix.net/* annotation values into per-service settings
"""

import re
from typing import Any, Callable, Dict, List, Tuple

from .errors import AnnotationParseError
from .model import ALL_SERVICES, Scope, TCPPortConfig


PREFIX = 'ingress.bluemix.net/'

ALB_ID = PREFIX + 'ALB-ID'
REWRITE_PATH = PREFIX + 'rewrite-path'
REDIRECT_TO_HTTPS = PREFIX + 'redirect-to-https'
LOCATION_SNIPPETS = PREFIX + 'location-snippets'
SERVER_SNIPPETS = PREFIX + 'server-snippets'
PROXY_READ_TIMEOUT = PREFIX + 'proxy-read-timeout'
PROXY_CONNECT_TIMEOUT = PREFIX + 'proxy-connect-timeout'
PROXY_BUFFERING = PREFIX + 'proxy-buffering'
PROXY_BUFFERS = PREFIX + 'proxy-buffers'
CLIENT_MAX_BODY_SIZE = PREFIX + 'client-max-body-size'
SSL_SERVICES = PREFIX + 'ssl-services'
PROXY_NEXT_UPSTREAM_CONFIG = PREFIX + 'proxy-next-upstream-config'
STICKY_COOKIE_SERVICES = PREFIX + 'sticky-cookie-services'
MUTUAL_AUTH = PREFIX + 'mutual-auth'
APPID_AUTH = PREFIX + 'appid-auth'
LARGE_CLIENT_HEADER_BUFFERS = PREFIX + 'large-client-header-buffers'
PROXY_ADD_HEADERS = PREFIX + 'proxy-add-headers'
RESPONSE_ADD_HEADERS = PREFIX + 'response-add-headers'
RESPONSE_REMOVE_HEADERS = PREFIX + 'response-remove-headers'
LOCATION_MODIFIER = PREFIX + 'location-modifier'
KEEPALIVE_REQUESTS = PREFIX + 'keepalive-requests'
KEEPALIVE_TIMEOUT = PREFIX + 'keepalive-timeout'
TCP_PORTS = PREFIX + 'tcp-ports'

SNIPPET_DELIMITER = '<EOS>'

_WHITESPACE = re.compile(r'\s+')
_TIME_PART = re.compile(r'(\d+)([hms])')
_TIMEOUT = re.compile(r'^(\d+)(s|m|h)$')

_NEXT_UPSTREAM_CONDITIONS = (
    'error', 'invalid_header', 'http_500', 'http_502', 'http_503', 'http_504',
    'http_403', 'http_404', 'http_429', 'non_idempotent',
)
LOCATION_MODIFIERS = ('=', '~', '~*', '^~')


def split_entries(raw: str) -> List[str]:
    """Split a ';'-separated annotation value into whitespace-normalized entries"""
    entries = []
    for entry in raw.split(';'):
        entry = _WHITESPACE.sub(' ', entry.strip())
        if entry:
            entries.append(entry)
    return entries


def parse_per_service(raw: str, entry_parser: Callable[[str], Tuple[Scope, Any]]) -> Dict[Scope, Any]:
    """Apply an entry parser to every entry of an annotation, indexed by scope"""
    values = {}
    for entry in split_entries(raw):
        scope, value = entry_parser(entry)
        values[scope] = value
    return values


def _key_value(token: str, entry: str) -> Tuple[str, str]:
    key, sep, value = token.partition('=')
    if not sep or not key or '=' in value:
        raise AnnotationParseError(f"invalid key=value pair '{token}' in '{entry}'")
    return key, value


def _service_scope(token: str, entry: str) -> Scope:
    key, value = _key_value(token, entry)
    if key != 'serviceName':
        raise AnnotationParseError(f"invalid service name format: {entry}")
    if not value:
        raise AnnotationParseError(f"invalid service name format, missing serviceName value: {entry}")
    return Scope.named(value)


def parse_service_with_single_value(entry: str, key: str, service_optional: bool = True,
                                    key_optional: bool = True) -> Tuple[Scope, str]:
    """Parse '[serviceName=<svc>] [<key>=]<value>'"""
    scope = ALL_SERVICES
    value = None
    for token in entry.split(' '):
        if token.startswith('serviceName'):
            scope = _service_scope(token, entry)
        elif value is not None:
            raise AnnotationParseError(f"unexpected value '{token}' in '{entry}'")
        elif '=' in token:
            token_key, token_value = _key_value(token, entry)
            if token_key != key:
                raise AnnotationParseError(f"invalid value format, expected key '{key}': {entry}")
            if not token_value:
                raise AnnotationParseError(f"invalid value format, missing value: {entry}")
            value = token_value
        elif key_optional:
            value = token
        else:
            raise AnnotationParseError(f"invalid annotation format, key '{key}' is mandatory in value: {entry}")

    if value is None:
        raise AnnotationParseError(f"invalid annotation format, missing value part: {entry}")
    if scope.is_all and not service_optional:
        raise AnnotationParseError(f"invalid annotation format, service name is mandatory: {entry}")
    return scope, value


def parse_timeout(value: str) -> int:
    """Convert a timeout such as '10s' or '2m' into seconds"""
    match = _TIMEOUT.match(value)
    if not match:
        raise AnnotationParseError(f"invalid timeout format: {value}")
    number, unit = int(match.group(1)), match.group(2)
    return number * {'s': 1, 'm': 60, 'h': 3600}[unit]


def parse_time_with_units(value: str) -> int:
    """Convert a combined duration such as '1h10m10s' into seconds"""
    if not value:
        raise AnnotationParseError("empty time value")
    position = 0
    total = 0
    for match in _TIME_PART.finditer(value):
        if match.start() != position:
            break
        total += int(match.group(1)) * {'h': 3600, 'm': 60, 's': 1}[match.group(2)]
        position = match.end()
    if position != len(value):
        raise AnnotationParseError(f"could not parse time value '{value}'")
    return total


def parse_rewrite(entry: str) -> Tuple[Scope, str]:
    scope = None
    rewrite = ''
    tokens = entry.split(' ')
    if len(tokens) != 2:
        raise AnnotationParseError(f"invalid rewrite format: {entry}")
    for token in tokens:
        key, value = _key_value(token, entry)
        if key == 'serviceName' and value:
            scope = Scope.named(value)
        elif key == 'rewrite':
            rewrite = value
        else:
            raise AnnotationParseError(f"invalid rewrite format: {entry}")
    if scope is None or not rewrite:
        raise AnnotationParseError(f"invalid rewrite format: {entry}")
    return scope, rewrite


def parse_proxy_timeout(entry: str) -> Tuple[Scope, str]:
    scope, value = parse_service_with_single_value(entry, 'timeout')
    return scope, str(parse_timeout(value))


def parse_proxy_buffering(entry: str) -> Tuple[Scope, str]:
    scope, value = parse_service_with_single_value(entry, 'enabled')
    return scope, 'on' if value == 'true' else 'off'


def parse_proxy_buffers(entry: str) -> Tuple[Scope, Dict[str, str]]:
    scope = ALL_SERVICES
    number = size = ''
    for token in entry.split(' '):
        if token.startswith('serviceName'):
            scope = _service_scope(token, entry)
            continue
        key, value = _key_value(token, entry)
        if key == 'number':
            number = value
        elif key == 'size':
            size = value
        else:
            raise AnnotationParseError(f"invalid proxy-buffers format: {entry}")
    if not number or not size:
        raise AnnotationParseError(f"invalid proxy-buffers format, number and size are required: {entry}")
    return scope, {'proxy_buffers': number, 'proxy_buffer_size': size}


def parse_size(entry: str) -> Tuple[Scope, str]:
    return parse_service_with_single_value(entry, 'size')


def parse_ssl_service(entry: str) -> Tuple[Scope, Dict[str, str]]:
    """Parse 'ssl-service=<svc> [ssl-secret=<secret>] [proxy-ssl-verify-depth=<n>] [proxy-ssl-name=<name>]'"""
    tokens = entry.split(' ')
    if len(tokens) > 4:
        raise AnnotationParseError(f"invalid ssl-services format: {entry}")

    key, service = _key_value(tokens[0], entry)
    if key != 'ssl-service' or not service:
        raise AnnotationParseError(f"expected ssl-service as the first key in ssl-services annotation, found '{key}'")

    secret = ''
    if len(tokens) > 1:
        key, secret = _key_value(tokens[1], entry)
        if key != 'ssl-secret':
            raise AnnotationParseError(f"expected ssl-secret as the second key in ssl-services annotation, found '{key}'")

    verify_depth = '1'
    ssl_name = ''
    for token in tokens[2:]:
        key, value = _key_value(token, entry)
        if key == 'proxy-ssl-verify-depth':
            if not value.isdigit() or not 0 < int(value) <= 10:
                raise AnnotationParseError("proxy-ssl-verify-depth must be greater than 0 and must be equal or less than 10")
            verify_depth = str(int(value))
        elif key == 'proxy-ssl-name':
            ssl_name = value
        else:
            raise AnnotationParseError(f"invalid optional parameter in the ssl-services annotation: {key}")

    return Scope.named(service), {
        'proxy_ssl_secret': secret,
        'proxy_ssl_verify_depth': verify_depth,
        'proxy_ssl_name': ssl_name,
        'proxy_ssl_verify': 'on',
    }


def parse_proxy_next_upstream(entry: str) -> Tuple[Scope, Dict[str, str]]:
    scope = None
    flags = {}
    retries = timeout = ''
    for token in entry.split(' '):
        key, sep, value = token.partition('=')
        if not sep:
            continue
        if key == 'serviceName' and value:
            scope = Scope.named(value)
        elif key == 'retries':
            retries = value
        elif key == 'timeout':
            timeout = value
        else:
            flags[key] = value == 'true'
    if scope is None:
        raise AnnotationParseError(f"proxy-next-upstream-config entry did not have service name: {entry}")

    if flags.get('off'):
        conditions = 'off'
    else:
        conditions = ' '.join(c for c in _NEXT_UPSTREAM_CONDITIONS if flags.get(c))
    return scope, {
        'proxy_next_upstream': conditions,
        'proxy_next_upstream_timeout': timeout,
        'proxy_next_upstream_tries': retries,
    }


def parse_sticky_cookie(entry: str) -> Tuple[Scope, Dict[str, str]]:
    scope = None
    cookie = {
        'sticky_cookie_name': '',
        'sticky_cookie_expire': '',
        'sticky_cookie_path': '',
        'sticky_cookie_hash': '',
        'secure': '',
        'httponly': '',
    }
    for token in entry.split(' '):
        if token in ('secure', 'httponly'):
            cookie[token] = 'true'
            continue
        key, value = _key_value(token, entry)
        if key == 'serviceName' and value:
            scope = Scope.named(value)
        elif key == 'name':
            cookie['sticky_cookie_name'] = value
        elif key == 'expires':
            cookie['sticky_cookie_expire'] = str(parse_time_with_units(value))
        elif key == 'path':
            cookie['sticky_cookie_path'] = value
        elif key == 'hash':
            cookie['sticky_cookie_hash'] = value
    if scope is None:
        raise AnnotationParseError(f"sticky-cookie-services entry did not have service name: {entry}")
    return scope, cookie


def parse_mutual_auth(raw: str) -> Dict[str, str]:
    settings = {'secret_name': '', 'port': ''}
    for token in _WHITESPACE.sub(' ', raw.strip()).split(' '):
        key, value = _key_value(token, raw)
        if key == 'secretName':
            settings['secret_name'] = value
        elif key == 'port':
            settings['port'] = value
    return settings


def parse_appid_auth(entry: str) -> Tuple[Scope, Dict[str, str]]:
    service = ''
    settings = {'bind_secret': '', 'namespace': '', 'request_type': '', 'id_token': ''}
    for token in entry.split(' '):
        key, value = _key_value(token, entry)
        if key == 'serviceName':
            service = value
        elif key == 'bindSecret':
            settings['bind_secret'] = value
        elif key == 'namespace':
            settings['namespace'] = value
        elif key == 'requestType':
            if value not in ('api', 'web'):
                raise AnnotationParseError(f"invalid value specified for requestType parameter: {value}")
            settings['request_type'] = value
        elif key == 'idToken':
            settings['id_token'] = value

    if not service or not settings['bind_secret']:
        raise AnnotationParseError(f"appid-auth annotation misses required parameters: {entry}")
    settings['namespace'] = settings['namespace'] or 'default'
    settings['request_type'] = settings['request_type'] or 'api'
    settings['id_token'] = settings['id_token'] or 'true'
    return Scope.named(service), settings


def parse_large_client_header_buffers(raw: str) -> str:
    tokens = _WHITESPACE.sub(' ', raw.strip()).split(' ')
    if len(tokens) != 2:
        raise AnnotationParseError("misconfigured large-client-header-buffers annotation")
    settings = {}
    for token in tokens:
        key, value = _key_value(token, raw)
        if key not in ('number', 'size'):
            raise AnnotationParseError("misconfigured large-client-header-buffers annotation (wrong key name)")
        settings[key] = value
    if not settings.get('number') or not settings.get('size'):
        raise AnnotationParseError("misconfigured large-client-header-buffers annotation (empty number or size)")
    return f"{settings['number']} {settings['size']}"


def parse_header_blocks(raw: str) -> Dict[Scope, List[str]]:
    """Parse 'serviceName=<svc> { <line> ... }' blocks of the header modifier annotations"""
    blocks = {}
    rest = raw
    while True:
        start = rest.find('{')
        if start == -1:
            break
        end = rest.find('}')
        if end == -1 or end < start or '{' in rest[start + 1:end]:
            raise AnnotationParseError("misconfigured header annotation, unbalanced brackets")

        selector = rest[:start].strip()
        key, sep, service = selector.partition('=')
        if not sep or key != 'serviceName' or not service:
            raise AnnotationParseError(f"misconfigured header annotation, wrong service selector '{selector}'")
        scope = Scope.named(service)
        if scope in blocks:
            raise AnnotationParseError(f"misconfigured header annotation, service '{service}' used multiple times")

        lines = [line.strip() for line in rest[start + 1:end].split('\n')]
        blocks[scope] = [line for line in lines if line]
        rest = rest[end + 1:]

    if not blocks:
        raise AnnotationParseError("header annotation is present but has no content")
    return blocks


def parse_location_modifier(entry: str) -> Tuple[Scope, str]:
    tokens = entry.split(' ')
    if len(tokens) != 2:
        raise AnnotationParseError(f"invalid location-modifier config format: {entry}")
    scope = None
    modifier = ''
    for token in tokens:
        key, sep, value = token.partition('=')
        if not sep:
            raise AnnotationParseError(f"invalid location-modifier config format: {entry}")
        if key == 'serviceName' and value:
            scope = Scope.named(value)
        elif key == 'modifier':
            modifier = value.strip("'\"")
        else:
            raise AnnotationParseError(f"invalid location-modifier config format: {entry}")
    if scope is None or modifier not in LOCATION_MODIFIERS:
        raise AnnotationParseError(f"invalid location-modifier config format: {entry}")
    return scope, modifier


def parse_keepalive_requests(entry: str) -> Tuple[Scope, str]:
    scope, value = parse_service_with_single_value(entry, 'requests')
    return scope, f"keepalive_requests {value};"


def parse_keepalive_timeout(entry: str) -> Tuple[Scope, str]:
    scope, value = parse_service_with_single_value(entry, 'timeout')
    return scope, f"keepalive_timeout {value};"


def parse_tcp_ports(raw: str, namespace: str) -> Dict[str, TCPPortConfig]:
    """Parse 'serviceName=<svc> ingressPort=<port> [servicePort=<port>]' entries keyed by ingress port"""
    ports = {}
    for entry in split_entries(raw):
        settings = {}
        for token in entry.split(' '):
            key, sep, value = token.partition('=')
            if not sep or key not in ('serviceName', 'ingressPort', 'servicePort') or not value:
                raise AnnotationParseError(f"invalid stream format: {entry}")
            settings[key] = value
        if 'serviceName' not in settings or 'ingressPort' not in settings:
            raise AnnotationParseError(f"invalid stream format: {entry}")
        service_port = settings.get('servicePort', settings['ingressPort'])
        if not settings['ingressPort'].isdigit() or not service_port.isdigit():
            raise AnnotationParseError(f"invalid stream format, ports must be numeric: {entry}")
        ports[settings['ingressPort']] = TCPPortConfig(
            service_name=settings['serviceName'],
            namespace=namespace,
            service_port=service_port,
        )
    return ports


def parse_location_snippets(raw: str) -> Dict[Scope, List[str]]:
    """Split a location snippet into per-service blocks delimited by <EOS> lines"""
    lines = raw.split('\n')
    delimiters = [i for i, line in enumerate(lines) if line.strip(' ') == SNIPPET_DELIMITER]
    if not delimiters:
        return {ALL_SERVICES: _snippet_lines(lines)}

    snippets = {}
    start = 0
    for end in delimiters:
        block = _snippet_lines(lines[start:end])
        if block and 'serviceName' in block[0]:
            service = block[0].split('=', 1)[1].split(' ')[0].strip()
            snippets[Scope.named(service)] = _snippet_lines(block[1:])
        else:
            snippets[ALL_SERVICES] = _snippet_lines(block)
        start = end + 1
    return snippets


def parse_server_snippets(raw: str) -> List[str]:
    return _snippet_lines(raw.split('\n'))


def _snippet_lines(lines: List[str]) -> List[str]:
    return [line.rstrip() for line in lines if line.strip()]
