"""
Ingress renderer
Builds networking.k8s.io/v1 Ingress objects with community controller annotations from split units
"""

from typing import Dict

from kubernetes import client

from .config import INGRESS_CLASS_ANNOTATION
from .model import LocationAnnotations, ServerAnnotations, SingleIngressConfig

NGINX_PREFIX = 'nginx.ingress.kubernetes.io/'
DEFAULT_PATH_TYPE = 'ImplementationSpecific'
MUTUAL_AUTH_VERIFY_DEPTH = '5'


def _snippet(lines) -> str:
    return '\n'.join(lines) + '\n'


def location_annotations(a: LocationAnnotations) -> Dict[str, str]:
    annotations = {}

    def put(key, value):
        if value:
            annotations[NGINX_PREFIX + key] = value

    if a.rewrite:
        put('rewrite-target', a.rewrite)
        put('enable-rewrite-log', 'true')
    if not a.redirect_to_https:
        put('ssl-redirect', 'false')
    if a.location_snippet:
        put('configuration-snippet', _snippet(a.location_snippet))

    put('proxy-body-size', a.client_max_body_size)
    put('proxy-buffer-size', a.proxy_buffer_size)
    put('proxy-buffering', a.proxy_buffering)
    put('proxy-buffers-number', a.proxy_buffers)
    put('proxy-read-timeout', a.proxy_read_timeout)
    put('proxy-connect-timeout', a.proxy_connect_timeout)

    if a.proxy_ssl_secret:
        put('proxy-ssl-secret', a.proxy_ssl_secret)
        put('backend-protocol', 'HTTPS')
        put('proxy-ssl-verify-depth', a.proxy_ssl_verify_depth)
        put('proxy-ssl-name', a.proxy_ssl_name)
        put('proxy-ssl-verify', a.proxy_ssl_verify)

    put('proxy-next-upstream', a.proxy_next_upstream)
    put('proxy-next-upstream-timeout', a.proxy_next_upstream_timeout)
    put('proxy-next-upstream-tries', a.proxy_next_upstream_tries)

    if a.set_sticky_cookie:
        put('affinity', 'cookie')
        put('affinity-mode', 'persistent')
        put('session-cookie-name', a.sticky_cookie_name)
        put('session-cookie-expires', a.sticky_cookie_expire)
        put('session-cookie-max-age', a.sticky_cookie_expire)
        put('session-cookie-path', a.sticky_cookie_path)
        put('session-cookie-change-on-failure', 'false')

    put('auth-url', a.appid_auth_url)
    put('auth-signin', a.appid_sign_in_url)
    if a.use_regex:
        put('use-regex', 'true')
    return annotations


def server_annotations(a: ServerAnnotations) -> Dict[str, str]:
    annotations = {}
    if a.server_snippet:
        annotations[NGINX_PREFIX + 'server-snippet'] = _snippet(a.server_snippet)
    if a.set_mutual_auth:
        annotations[NGINX_PREFIX + 'auth-tls-secret'] = a.mutual_auth_secret_name
        annotations[NGINX_PREFIX + 'auth-tls-verify-client'] = 'on'
        annotations[NGINX_PREFIX + 'auth-tls-verify-depth'] = MUTUAL_AUTH_VERIFY_DEPTH
    return annotations


def _backend(unit: SingleIngressConfig) -> client.V1IngressBackend:
    if isinstance(unit.service_port, int):
        port = client.V1ServiceBackendPort(number=unit.service_port)
    else:
        port = client.V1ServiceBackendPort(name=unit.service_port)
    return client.V1IngressBackend(
        service=client.V1IngressServiceBackend(name=unit.service_name, port=port)
    )


def render(unit: SingleIngressConfig) -> client.V1Ingress:
    """Ingress object of one split unit"""
    annotations = {INGRESS_CLASS_ANNOTATION: unit.ingress_class}

    if unit.is_server:
        annotations.update(server_annotations(unit.server_annotations))
        rules = [client.V1IngressRule(host=host) for host in unit.host_names if host]
    else:
        annotations.update(location_annotations(unit.location_annotations))
        http = client.V1HTTPIngressRuleValue(paths=[
            client.V1HTTPIngressPath(
                path=unit.path,
                path_type=unit.path_type or DEFAULT_PATH_TYPE,
                backend=_backend(unit),
            )
        ])
        rules = [client.V1IngressRule(host=host or None, http=http) for host in unit.host_names]

    tls = [client.V1IngressTLS(hosts=list(t.host_names), secret_name=t.secret) for t in unit.tls_configs]

    return client.V1Ingress(
        api_version='networking.k8s.io/v1',
        kind='Ingress',
        metadata=client.V1ObjectMeta(
            name=unit.name,
            namespace=unit.namespace,
            annotations=annotations,
        ),
        spec=client.V1IngressSpec(
            rules=rules or None,
            tls=tls or None,
        ),
    )
