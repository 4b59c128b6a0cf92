"""
Configuration resolver
Builds the per-host, per-service configuration of one legacy Ingress from its annotations
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from . import annotations as ann
from . import messages
from .config import (
    MODE_TEST,
    MODE_TEST_WITH_PRIVATE,
    PRIVATE_INGRESS_CLASS,
    PUBLIC_INGRESS_CLASS,
    TEST_INGRESS_CLASS,
)
from .errors import AnnotationParseError, InvalidIngressError, MigrationError
from .model import (
    ALL_SERVICES,
    IngressConfig,
    Location,
    LocationAnnotations,
    Scope,
    Server,
    ServerAnnotations,
    TCPPortConfig,
)
from .secret_canonicalizer import SecretCanonicalizer, secret_ref

logger = logging.getLogger(__name__)

# applicability
LOCATION_FIELD = 'location-field'
LOCATION_SNIPPET = 'location-snippet'
SERVER_OR_LOCATION_SNIPPET = 'server-or-location-snippet'

# how an entry for all services combines with an entry naming one service
OVERRIDE = 'override'
APPEND = 'append'

PATH_TYPE_EXACT = 'Exact'
ROOT_PATH = '/'

UNSUPPORTED_ANNOTATIONS = (
    (ann.PREFIX + 'custom-errors', messages.CUSTOM_ERRORS),
    (ann.PREFIX + 'custom-error-actions', messages.CUSTOM_ERROR_ACTIONS),
    (ann.PREFIX + 'upstream-max-fails', messages.UPSTREAM_MAX_FAILS),
    (ann.PREFIX + 'proxy-external-service', messages.PROXY_EXTERNAL_SERVICE),
    (ann.PREFIX + 'proxy-busy-buffers-size', messages.PROXY_BUSY_BUFFERS_SIZE),
    (ann.PREFIX + 'add-host-port', messages.ADD_HOST_PORT),
    (ann.PREFIX + 'iam-ui-auth', messages.IAM_UI_AUTH),
    (ann.PREFIX + 'upstream-keepalive', messages.UPSTREAM_KEEPALIVE),
    (ann.PREFIX + 'upstream-keepalive-timeout', messages.UPSTREAM_KEEPALIVE_TIMEOUT),
    (ann.PREFIX + 'upstream-fail-timeout', messages.UPSTREAM_FAIL_TIMEOUT),
    (ann.PREFIX + 'hsts', messages.HSTS),
    (ann.PREFIX + 'custom-port', messages.CUSTOM_PORT),
)


@dataclass(frozen=True)
class AnnotationRule:
    """How one legacy annotation is parsed and where its values land"""
    key: str
    parser: Callable[[str], Dict[Scope, Any]]
    applicability: str = LOCATION_FIELD
    conflict: str = OVERRIDE
    field: Optional[str] = None


def per_service(entry_parser):
    def parse(raw):
        return ann.parse_per_service(raw, entry_parser)
    return parse


def header_directive(directive: str):
    def parse(raw):
        blocks = ann.parse_header_blocks(raw)
        return {scope: [f"{directive} {line}" for line in lines] for scope, lines in blocks.items()}
    return parse


VALUE_RULES = (
    AnnotationRule(ann.REWRITE_PATH, per_service(ann.parse_rewrite), field='rewrite'),
    AnnotationRule(ann.PROXY_READ_TIMEOUT, per_service(ann.parse_proxy_timeout), field='proxy_read_timeout'),
    AnnotationRule(ann.PROXY_CONNECT_TIMEOUT, per_service(ann.parse_proxy_timeout), field='proxy_connect_timeout'),
    AnnotationRule(ann.PROXY_BUFFERING, per_service(ann.parse_proxy_buffering), field='proxy_buffering'),
    AnnotationRule(ann.PROXY_BUFFERS, per_service(ann.parse_proxy_buffers)),
    AnnotationRule(ann.CLIENT_MAX_BODY_SIZE, per_service(ann.parse_size), field='client_max_body_size'),
    AnnotationRule(ann.SSL_SERVICES, per_service(ann.parse_ssl_service)),
    AnnotationRule(ann.PROXY_NEXT_UPSTREAM_CONFIG, per_service(ann.parse_proxy_next_upstream)),
    AnnotationRule(ann.STICKY_COOKIE_SERVICES, per_service(ann.parse_sticky_cookie)),
    AnnotationRule(ann.APPID_AUTH, per_service(ann.parse_appid_auth)),
    AnnotationRule(ann.LOCATION_MODIFIER, per_service(ann.parse_location_modifier), field='location_modifier'),
    AnnotationRule(ann.LOCATION_SNIPPETS, ann.parse_location_snippets, applicability=LOCATION_SNIPPET),
)

# applied after the App ID configuration has been injected into the location snippets
SNIPPET_RULES = (
    AnnotationRule(ann.PROXY_ADD_HEADERS, header_directive('proxy_set_header'),
                   applicability=LOCATION_SNIPPET, conflict=APPEND),
    AnnotationRule(ann.RESPONSE_ADD_HEADERS, header_directive('more_set_headers'),
                   applicability=LOCATION_SNIPPET, conflict=APPEND),
    AnnotationRule(ann.RESPONSE_REMOVE_HEADERS, header_directive('more_clear_headers'),
                   applicability=LOCATION_SNIPPET, conflict=APPEND),
    AnnotationRule(ann.KEEPALIVE_REQUESTS, per_service(ann.parse_keepalive_requests),
                   applicability=SERVER_OR_LOCATION_SNIPPET),
    AnnotationRule(ann.KEEPALIVE_TIMEOUT, per_service(ann.parse_keepalive_timeout),
                   applicability=SERVER_OR_LOCATION_SNIPPET),
)

_LOCATION_FIELDS = {f.name for f in fields(LocationAnnotations)}


def appid_snippet(name: str, with_id_token: bool) -> List[str]:
    """Lua/nginx lines that pass the App ID tokens of the OAuth proxy to the backend"""
    lines = [
        f"auth_request_set $name_upstream_1 $upstream_cookie__oauth2_{name}_1;",
        "auth_request_set $access_token $upstream_http_x_auth_request_access_token;",
    ]
    if with_id_token:
        lines.append("auth_request_set $id_token $upstream_http_authorization;")
    lines += [
        "access_by_lua_block {",
        "  if ngx.var.name_upstream_1 ~= \"\" then",
        f"    ngx.header[\"Set-Cookie\"] = \"_oauth2_{name}_1=\" .. ngx.var.name_upstream_1 .. ngx.var.auth_cookie:match(\"(; .*)\")",
        "  end",
    ]
    if with_id_token:
        lines += [
            "  if ngx.var.id_token ~= \"\" and ngx.var.access_token ~= \"\" then",
            "    ngx.req.set_header(\"Authorization\", \"Bearer \" .. ngx.var.access_token .. \" \" .. ngx.var.id_token:match(\"%s*Bearer%s*(.*)\"))",
        ]
    else:
        lines += [
            "  if ngx.var.access_token ~= \"\" then",
            "    ngx.req.set_header(\"Authorization\", \"Bearer \" .. ngx.var.access_token)",
        ]
    lines += ["  end", "}"]
    return lines


def has_auth_conflict(snippet: List[str]) -> bool:
    """True when a snippet already defines the auth variables or sets the Authorization header"""
    for line in snippet:
        words = line.split()
        if 'auth_request_set' in words and (
                '$name_upstream_1' in words or '$access_token' in words or '$id_token' in words):
            return True
        if 'access_by_lua_block' in line:
            return True
        if 'proxy_set_header' in words and 'Authorization' in words:
            return True
    return False


def ingress_class_for(mode: str, alb_id_list: str) -> str:
    if 'private' in alb_id_list:
        if mode == MODE_TEST:
            raise ValueError("Ingress resources selecting private ALBs must be skipped in 'test' mode")
        if mode == MODE_TEST_WITH_PRIVATE:
            return TEST_INGRESS_CLASS
        return PRIVATE_INGRESS_CLASS
    if mode in (MODE_TEST, MODE_TEST_WITH_PRIVATE):
        return TEST_INGRESS_CLASS
    return PUBLIC_INGRESS_CLASS


def backend_service(backend: client.V1IngressBackend):
    """(service name, port number or name) of an Ingress backend"""
    if backend is None or backend.service is None:
        raise InvalidIngressError("only service backends can be migrated")
    port = backend.service.port
    if port is None:
        raise InvalidIngressError(f"backend service {backend.service.name} has no port")
    return backend.service.name, port.number if port.number is not None else port.name


def ingress_services(spec: client.V1IngressSpec) -> List[str]:
    """Backend service names of an Ingress in order of appearance"""
    services = []
    backends = []
    for rule in spec.rules or []:
        if rule.http:
            backends += [path.backend for path in rule.http.paths or []]
    if spec.default_backend is not None:
        backends.append(spec.default_backend)
    for backend in backends:
        if backend is not None and backend.service is not None and backend.service.name not in services:
            services.append(backend.service.name)
    return services


def expand(parsed: Dict[Scope, Any], services: List[str], conflict: str = OVERRIDE) -> Dict[str, Any]:
    """Index values by service name, an entry for all services applies to every backend"""
    result = {}
    if ALL_SERVICES in parsed:
        for service in services:
            value = parsed[ALL_SERVICES]
            result[service] = list(value) if isinstance(value, list) else value
    for scope, value in parsed.items():
        if scope.is_all:
            continue
        if conflict == APPEND and isinstance(value, list) and scope.service in result:
            result[scope.service] = result[scope.service] + list(value)
        else:
            result[scope.service] = value
    return result


@dataclass
class Resolution:
    config: Optional[IngressConfig] = None
    tcp_ports: Dict[str, TCPPortConfig] = field(default_factory=dict)
    alb_id_list: str = ''
    warnings: List[str] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)


class _Settings:
    """Per-service values collected while walking the annotation rules"""

    def __init__(self):
        self.values: Dict[str, Dict[str, Any]] = {}
        self.present: Dict[str, Dict[str, None]] = {}
        self.location_snippets: Dict[str, List[str]] = {}
        self.server_snippet: List[str] = []

    def service(self, name: str) -> Dict[str, Any]:
        return self.values.setdefault(name, {})

    def services_with(self, key: str) -> List[str]:
        return list(self.present.get(key, {}))

    def apply(self, rule: AnnotationRule, parsed: Dict[Scope, Any], services: List[str]):
        if rule.applicability == SERVER_OR_LOCATION_SNIPPET:
            for scope, line in parsed.items():
                if scope.is_all:
                    self.server_snippet.append(line)
                else:
                    self.location_snippets.setdefault(scope.service, []).append(line)
            return

        for service, value in expand(parsed, services, rule.conflict).items():
            self.present.setdefault(rule.key, {})[service] = None
            if rule.applicability == LOCATION_SNIPPET:
                self.location_snippets.setdefault(service, []).extend(value)
            elif isinstance(value, dict):
                self.service(service).update(value)
            else:
                self.service(service)[rule.field] = value


class ConfigurationResolver:
    """Resolves a legacy Ingress into an IngressConfig"""

    def __init__(self, canonicalizer: SecretCanonicalizer):
        self.canonicalizer = canonicalizer

    def resolve(self, ingress: client.V1Ingress, mode: str, enhancements_enabled: bool) -> Resolution:
        name = ingress.metadata.name
        namespace = ingress.metadata.namespace
        annotations = ingress.metadata.annotations or {}
        spec = ingress.spec or client.V1IngressSpec()

        result = Resolution(alb_id_list=annotations.get(ann.ALB_ID, ''))
        warnings = result.warnings
        errors = result.errors

        warnings += [message for key, message in UNSUPPORTED_ANNOTATIONS if key in annotations]

        ingress_class = ingress_class_for(mode, result.alb_id_list)
        if result.alb_id_list:
            warnings.append(messages.ALB_SELECTION)

        services = ingress_services(spec)
        settings = _Settings()

        def apply_rules(rules):
            for rule in rules:
                raw = annotations.get(rule.key)
                if raw is None:
                    continue
                try:
                    parsed = rule.parser(raw)
                except AnnotationParseError as e:
                    logger.error(f"Failed to parse {rule.key} of Ingress {namespace}/{name}: {e}")
                    errors.append(AnnotationParseError(f"{rule.key}: {e}"))
                    continue
                settings.apply(rule, parsed, services)

        if ann.SERVER_SNIPPETS in annotations:
            settings.server_snippet += ann.parse_server_snippets(annotations[ann.SERVER_SNIPPETS])

        apply_rules(VALUE_RULES)

        if settings.services_with(ann.REWRITE_PATH):
            warnings.append(messages.REWRITES)

        redirect_to_https = annotations.get(ann.REDIRECT_TO_HTTPS, '').strip().lower() == 'true'

        self._resolve_proxy_secrets(settings, namespace, warnings, errors)
        self._resolve_sticky_cookies(settings, warnings)
        server_annotations = self._resolve_mutual_auth(annotations, namespace, settings, warnings, errors)
        self._resolve_appid(settings, namespace, warnings)

        if ann.LARGE_CLIENT_HEADER_BUFFERS in annotations:
            try:
                buffers = ann.parse_large_client_header_buffers(annotations[ann.LARGE_CLIENT_HEADER_BUFFERS])
                settings.server_snippet.append(f"large_client_header_buffers {buffers};")
            except AnnotationParseError as e:
                errors.append(AnnotationParseError(f"{ann.LARGE_CLIENT_HEADER_BUFFERS}: {e}"))

        apply_rules(SNIPPET_RULES)

        modifiers = self._resolve_location_modifiers(settings, enhancements_enabled, warnings, errors)

        if ann.TCP_PORTS in annotations:
            try:
                result.tcp_ports = ann.parse_tcp_ports(annotations[ann.TCP_PORTS], namespace)
            except AnnotationParseError as e:
                errors.append(AnnotationParseError(
                    f"error in parsing the tcp-ports annotation of the Ingress {name} in Namespace {namespace}: {e}"))

        if errors:
            logger.error(f"Failed to resolve Ingress {namespace}/{name}: {[str(e) for e in errors]}")
            return result

        server_annotations.server_snippet = list(settings.server_snippet)

        def location(path, backend, path_type):
            service, port = backend_service(backend)
            if modifiers.get(service) == '=':
                path_type = PATH_TYPE_EXACT
            return Location(
                path=path or ROOT_PATH,
                service_name=service,
                service_port=port,
                annotations=self._location_annotations(settings, service, redirect_to_https, modifiers),
                path_type=path_type if enhancements_enabled else None,
            )

        config = IngressConfig(name=name, namespace=namespace, ingress_class=ingress_class,
                               tls=list(spec.tls or []))
        try:
            for rule in spec.rules or []:
                if not rule.host:
                    raise InvalidIngressError("host field of ingress rule is empty")
                server = Server(host_name=rule.host, annotations=_copy_server_annotations(server_annotations))
                if rule.http:
                    for path in rule.http.paths or []:
                        server.locations.append(location(path.path, path.backend, path.path_type))
                has_root = any(loc.path == ROOT_PATH for loc in server.locations)
                if not has_root and spec.default_backend is not None:
                    server.locations.append(location(ROOT_PATH, spec.default_backend, None))
                config.servers.append(server)

            if not spec.rules and spec.default_backend is not None:
                config.servers.append(Server(
                    host_name='',
                    annotations=_copy_server_annotations(server_annotations),
                    locations=[location(ROOT_PATH, spec.default_backend, None)],
                ))
        except InvalidIngressError as e:
            logger.error(f"Failed to resolve Ingress {namespace}/{name}: {e}")
            errors.append(e)
            return result

        if warnings:
            logger.warning(f"Ingress {namespace}/{name} has {len(warnings)} migration warning(s)")
        result.config = config
        return result

    def _resolve_proxy_secrets(self, settings: _Settings, namespace: str, warnings: List[str], errors: List[Exception]):
        for service in settings.services_with(ann.SSL_SERVICES):
            values = settings.service(service)
            secret_name = values.get('proxy_ssl_secret')
            if not secret_name:
                continue
            try:
                secret, secret_warnings = self.canonicalizer.canonicalize(secret_name, namespace)
            except (MigrationError, ApiException) as e:
                logger.error(f"Could not prepare the proxy SSL secret {secret_name} of service {service}: {e}")
                errors.append(e)
                continue
            values['proxy_ssl_secret'] = secret_ref(secret)
            warnings += [w for w in secret_warnings if w not in warnings]

    def _resolve_sticky_cookies(self, settings: _Settings, warnings: List[str]):
        services = settings.services_with(ann.STICKY_COOKIE_SERVICES)
        if any(not settings.service(s).get('secure') for s in services):
            warnings.append(messages.STICKY_COOKIE_NO_SECURE)
        if any(not settings.service(s).get('httponly') for s in services):
            warnings.append(messages.STICKY_COOKIE_NO_HTTPONLY)

    def _resolve_mutual_auth(self, annotations, namespace: str, settings: _Settings,
                             warnings: List[str], errors: List[Exception]) -> ServerAnnotations:
        server_annotations = ServerAnnotations()
        raw = annotations.get(ann.MUTUAL_AUTH)
        if raw is None:
            return server_annotations
        try:
            mutual_auth = ann.parse_mutual_auth(raw)
        except AnnotationParseError as e:
            errors.append(AnnotationParseError(f"{ann.MUTUAL_AUTH}: {e}"))
            return server_annotations

        if mutual_auth['secret_name']:
            try:
                secret = self.canonicalizer.lookup(mutual_auth['secret_name'], namespace)
                server_annotations.mutual_auth_secret_name = secret_ref(secret)
            except (MigrationError, ApiException) as e:
                logger.error(f"Could not find mutual-auth secret {mutual_auth['secret_name']}: {e}")
                errors.append(e)
                return server_annotations

        server_annotations.set_mutual_auth = bool(mutual_auth['secret_name'] and mutual_auth['port'])
        if server_annotations.set_mutual_auth and mutual_auth['port'] != '443':
            warnings.append(messages.MUTUAL_AUTH_CUSTOM_PORT)
        return server_annotations

    def _resolve_appid(self, settings: _Settings, namespace: str, warnings: List[str]):
        protected = settings.services_with(ann.APPID_AUTH)
        if not protected:
            return
        warnings += [messages.APPID_AUTH_ENABLE_ADDON, messages.APPID_AUTH_ADD_CALLBACKS]

        conflict = False
        for service in protected:
            values = settings.service(service)
            instance = values['bind_secret'].removeprefix('binding-')
            values['appid_auth_url'] = f"https://$host/oauth2-{instance}/auth"
            if values['request_type'] == 'web':
                values['appid_sign_in_url'] = f"https://$host/oauth2-{instance}/start?rd=$escaped_request_uri"

            snippet = settings.location_snippets.get(service, [])
            if has_auth_conflict(snippet):
                logger.info(f"Location snippet of service {service} already configures authentication, "
                            f"App ID configuration not added")
                conflict = True
                continue
            settings.location_snippets[service] = snippet + appid_snippet(
                instance.replace('-', '_'), values['id_token'] == 'true')

        if conflict:
            warnings.append(messages.APPID_AUTH_SNIPPET_CONFLICT)
            for service in protected:
                settings.service(service)['appid_auth_url'] = ''
                settings.service(service)['appid_sign_in_url'] = ''

        if any(settings.service(s)['namespace'] != namespace for s in protected):
            warnings.append(messages.APPID_AUTH_DIFFERENT_NAMESPACE)

    def _resolve_location_modifiers(self, settings: _Settings, enhancements_enabled: bool,
                                    warnings: List[str], errors: List[Exception]) -> Dict[str, str]:
        modifiers = {s: settings.service(s)['location_modifier']
                     for s in settings.services_with(ann.LOCATION_MODIFIER)}
        if not modifiers:
            return modifiers

        for modifier in modifiers.values():
            if modifier in ('~', '^~'):
                errors.append(InvalidIngressError(
                    f"the '{modifier}' location modifier is not supported by the Kubernetes Ingress Controller"))
                warnings.append(messages.LOCATION_MODIFIER_UNSUPPORTED)
                break
            if modifier == '=' and not enhancements_enabled:
                errors.append(InvalidIngressError(
                    "the '=' location modifier requires path types, available from Kubernetes 1.18"))
                warnings.append(messages.LOCATION_MODIFIER_UNSUPPORTED)
                break
        warnings.append(messages.LOCATION_MODIFIER)
        return modifiers

    def _location_annotations(self, settings: _Settings, service: str, redirect_to_https: bool,
                              modifiers: Dict[str, str]) -> LocationAnnotations:
        values = {k: v for k, v in settings.values.get(service, {}).items() if k in _LOCATION_FIELDS}
        return LocationAnnotations(
            **values,
            redirect_to_https=redirect_to_https,
            location_snippet=list(settings.location_snippets.get(service, [])),
            set_sticky_cookie=service in settings.present.get(ann.STICKY_COOKIE_SERVICES, {}),
            use_regex=modifiers.get(service) == '~*',
        )


def _copy_server_annotations(server_annotations: ServerAnnotations) -> ServerAnnotations:
    return ServerAnnotations(
        server_snippet=list(server_annotations.server_snippet),
        set_mutual_auth=server_annotations.set_mutual_auth,
        mutual_auth_secret_name=server_annotations.mutual_auth_secret_name,
    )
