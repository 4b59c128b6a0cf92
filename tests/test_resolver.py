"""
Tests for the configuration resolver.
"""

import pytest

from ingress_migrator import messages
from ingress_migrator.errors import AnnotationParseError, InvalidIngressError, SecretNotFoundError
from ingress_migrator.model import TCPPortConfig
from ingress_migrator.resolver import (
    ConfigurationResolver,
    appid_snippet,
    expand,
    has_auth_conflict,
    ingress_class_for,
)
from ingress_migrator.model import ALL_SERVICES, Scope
from ingress_migrator.secret_canonicalizer import SecretCanonicalizer

from tests.fakes import CAFE_RULES, make_ingress, make_kube, make_secret


P = 'ingress.bluemix.net/'


def resolve(ingress, mode='production', enhancements=True, secrets=None):
    resolver = ConfigurationResolver(SecretCanonicalizer(make_kube(secrets=secrets)))
    return resolver.resolve(ingress, mode, enhancements)


def cafe(annotations=None, **kwargs):
    kwargs.setdefault('rules', CAFE_RULES)
    return make_ingress(annotations=annotations, **kwargs)


def locations(result):
    return {loc.service_name: loc for server in result.config.servers for loc in server.locations}


class TestHelpers:
    @pytest.mark.parametrize("mode,alb_ids,expected", [
        ('production', '', 'public-iks-k8s-nginx'),
        ('production', 'public-cr1-alb1', 'public-iks-k8s-nginx'),
        ('production', 'private-cr1-alb1', 'private-iks-k8s-nginx'),
        ('test', 'public-cr1-alb1', 'test'),
        ('test-with-private', '', 'test'),
        ('test-with-private', 'private-cr1-alb1', 'test'),
    ])
    def test_ingress_class(self, mode, alb_ids, expected):
        assert ingress_class_for(mode, alb_ids) == expected

    def test_private_alb_in_test_mode_is_a_contract_violation(self):
        with pytest.raises(ValueError):
            ingress_class_for('test', 'private-cr1-alb1')

    def test_named_entry_overrides_all_services(self):
        parsed = {ALL_SERVICES: '10', Scope.named('coffee-svc'): '62'}
        assert expand(parsed, ['coffee-svc', 'tea-svc']) == {'coffee-svc': '62', 'tea-svc': '10'}

    def test_append_conflict_keeps_both(self):
        parsed = {ALL_SERVICES: ['a'], Scope.named('tea-svc'): ['b']}
        assert expand(parsed, ['tea-svc'], conflict='append') == {'tea-svc': ['a', 'b']}

    @pytest.mark.parametrize("snippet,conflict", [
        (['auth_request_set $access_token $upstream_http_x;'], True),
        (['auth_request_set $name_upstream_1 $upstream_cookie_x;'], True),
        (['access_by_lua_block {', '}'], True),
        (['proxy_set_header Authorization "Bearer x";'], True),
        (['proxy_set_header X-Auth x;'], False),
        (['auth_request_set $user $upstream_http_user;'], False),
        ([], False),
    ])
    def test_auth_conflict(self, snippet, conflict):
        assert has_auth_conflict(snippet) is conflict

    def test_appid_snippet_with_id_token(self):
        lines = appid_snippet('my_appid', True)
        assert lines[0] == 'auth_request_set $name_upstream_1 $upstream_cookie__oauth2_my_appid_1;'
        assert 'auth_request_set $id_token $upstream_http_authorization;' in lines
        assert '  if ngx.var.id_token ~= "" and ngx.var.access_token ~= "" then' in lines
        assert lines[-1] == '}'

    def test_appid_snippet_access_token_only(self):
        lines = appid_snippet('my_appid', False)
        assert 'auth_request_set $id_token $upstream_http_authorization;' not in lines
        assert '    ngx.req.set_header("Authorization", "Bearer " .. ngx.var.access_token)' in lines


class TestBasicResolution:
    def test_plain_ingress(self):
        result = resolve(cafe())

        assert result.errors == []
        assert result.warnings == []
        config = result.config
        assert config.name == 'cafe-ingress'
        assert config.namespace == 'default'
        assert config.ingress_class == 'public-iks-k8s-nginx'
        assert [s.host_name for s in config.servers] == ['cafe.example.com']
        assert [(l.path, l.service_name, l.service_port) for l in config.servers[0].locations] == [
            ('/coffee', 'coffee-svc', 80),
            ('/tea', 'tea-svc', 80),
        ]

    def test_alb_selection(self):
        result = resolve(cafe({P + 'ALB-ID': 'private-cr1-alb1'}))
        assert result.config.ingress_class == 'private-iks-k8s-nginx'
        assert result.alb_id_list == 'private-cr1-alb1'
        assert messages.ALB_SELECTION in result.warnings

    def test_unsupported_annotations_warn(self):
        result = resolve(cafe({P + 'hsts': 'enabled=true', P + 'custom-port': 'protocol=http port=8080'}))
        assert result.warnings == [messages.HSTS, messages.CUSTOM_PORT]
        assert result.errors == []

    def test_path_type_requires_enhancements(self):
        ingress = cafe(rules=[('cafe.example.com', [('/coffee', 'coffee-svc', 80, 'Prefix')])])
        assert resolve(ingress).config.servers[0].locations[0].path_type == 'Prefix'
        assert resolve(ingress, enhancements=False).config.servers[0].locations[0].path_type is None

    def test_missing_path_defaults_to_root(self):
        ingress = cafe(rules=[('cafe.example.com', [(None, 'coffee-svc', 'http')])])
        location = resolve(ingress).config.servers[0].locations[0]
        assert location.path == '/'
        assert location.service_port == 'http'

    def test_empty_host_is_an_error(self):
        result = resolve(cafe(rules=[('', [('/coffee', 'coffee-svc', 80)])]))
        assert result.config is None
        assert isinstance(result.errors[0], InvalidIngressError)

    def test_default_backend_adds_root_location(self):
        result = resolve(cafe(default_backend=('default-svc', 8080)))
        server = result.config.servers[0]
        assert [(l.path, l.service_name) for l in server.locations] == [
            ('/coffee', 'coffee-svc'), ('/tea', 'tea-svc'), ('/', 'default-svc')]

    def test_default_backend_does_not_replace_root_path(self):
        ingress = cafe(rules=[('cafe.example.com', [('/', 'coffee-svc', 80)])], default_backend=('default-svc', 80))
        assert [l.service_name for l in resolve(ingress).config.servers[0].locations] == ['coffee-svc']

    def test_default_backend_only(self):
        result = resolve(make_ingress(default_backend=('default-svc', 8080)))
        assert [s.host_name for s in result.config.servers] == ['']
        assert result.config.servers[0].locations[0].service_name == 'default-svc'

    def test_redirect_to_https(self):
        result = resolve(cafe({P + 'redirect-to-https': 'True'}))
        assert all(l.annotations.redirect_to_https for l in locations(result).values())

    def test_tcp_ports_use_ingress_namespace(self):
        result = resolve(cafe({P + 'tcp-ports': 'serviceName=coffee-svc ingressPort=9090 servicePort=8080'},
                              namespace='cafe'))
        assert result.tcp_ports == {'9090': TCPPortConfig('coffee-svc', 'cafe', '8080')}

    def test_parse_errors_are_collected(self):
        result = resolve(cafe({
            P + 'proxy-read-timeout': 'serviceName=tea-svc timeout=ten',
            P + 'tcp-ports': 'serviceName=coffee-svc',
        }))
        assert result.config is None
        assert len(result.errors) == 2
        assert all(isinstance(e, AnnotationParseError) for e in result.errors)
        assert str(result.errors[0]).startswith(P + 'proxy-read-timeout')


class TestPerServiceValues:
    def test_timeouts(self):
        result = resolve(cafe({
            P + 'proxy-read-timeout': 'serviceName=coffee-svc timeout=62s; timeout=10s',
            P + 'proxy-connect-timeout': 'serviceName=tea-svc timeout=1m',
        }))
        by_service = locations(result)
        assert by_service['coffee-svc'].annotations.proxy_read_timeout == '62'
        assert by_service['tea-svc'].annotations.proxy_read_timeout == '10'
        assert by_service['tea-svc'].annotations.proxy_connect_timeout == '60'
        assert by_service['coffee-svc'].annotations.proxy_connect_timeout == ''

    def test_rewrite(self):
        result = resolve(cafe({P + 'rewrite-path': 'serviceName=tea-svc rewrite=/leaves/'}))
        assert locations(result)['tea-svc'].annotations.rewrite == '/leaves/'
        assert locations(result)['coffee-svc'].annotations.rewrite == ''
        assert messages.REWRITES in result.warnings

    def test_buffers_and_body_size(self):
        result = resolve(cafe({
            P + 'proxy-buffers': 'serviceName=tea-svc number=4 size=8k',
            P + 'proxy-buffering': 'enabled=false',
            P + 'client-max-body-size': 'size=2m',
        }))
        tea = locations(result)['tea-svc'].annotations
        assert (tea.proxy_buffers, tea.proxy_buffer_size, tea.proxy_buffering, tea.client_max_body_size) == (
            '4', '8k', 'off', '2m')

    def test_sticky_cookie(self):
        result = resolve(cafe({P + 'sticky-cookie-services':
                               'serviceName=coffee-svc name=sticky expires=1h path=/coffee secure httponly'}))
        coffee = locations(result)['coffee-svc'].annotations
        assert coffee.set_sticky_cookie
        assert (coffee.sticky_cookie_name, coffee.sticky_cookie_expire, coffee.sticky_cookie_path) == (
            'sticky', '3600', '/coffee')
        assert not locations(result)['tea-svc'].annotations.set_sticky_cookie
        assert result.warnings == []

    def test_sticky_cookie_flag_warnings(self):
        result = resolve(cafe({P + 'sticky-cookie-services': 'serviceName=coffee-svc name=sticky expires=1h path=/'}))
        assert result.warnings == [messages.STICKY_COOKIE_NO_SECURE, messages.STICKY_COOKIE_NO_HTTPONLY]

    def test_proxy_next_upstream(self):
        result = resolve(cafe({P + 'proxy-next-upstream-config':
                               'serviceName=tea-svc retries=3 timeout=10s error=true'}))
        tea = locations(result)['tea-svc'].annotations
        assert (tea.proxy_next_upstream, tea.proxy_next_upstream_timeout, tea.proxy_next_upstream_tries) == (
            'error', '10s', '3')


class TestSecrets:
    def test_ssl_services_secret_is_canonicalized(self):
        secret = make_secret('backend-ssl', 'default', {'trusted.crt': 'CA'})
        result = resolve(cafe({P + 'ssl-services': 'ssl-service=coffee-svc ssl-secret=backend-ssl'}),
                         secrets=[secret])
        coffee = locations(result)['coffee-svc'].annotations
        assert coffee.proxy_ssl_secret == 'default/backend-ssl'
        assert coffee.proxy_ssl_verify == 'on'
        assert secret.data['ca.crt'] == 'CA'
        assert locations(result)['tea-svc'].annotations.proxy_ssl_secret == ''

    def test_ssl_services_without_secret(self):
        result = resolve(cafe({P + 'ssl-services': 'ssl-service=coffee-svc'}))
        assert result.errors == []
        assert locations(result)['coffee-svc'].annotations.proxy_ssl_secret == ''

    def test_missing_ssl_secret_is_an_error(self):
        result = resolve(cafe({P + 'ssl-services': 'ssl-service=coffee-svc ssl-secret=backend-ssl'}))
        assert result.config is None
        assert isinstance(result.errors[0], SecretNotFoundError)

    def test_mutual_auth(self):
        result = resolve(cafe({P + 'mutual-auth': 'secretName=ca-secret port=9443'}),
                         secrets=[make_secret('ca-secret', 'ibm-cert-store', {'ca.crt': 'CA'})])
        server = result.config.servers[0].annotations
        assert server.set_mutual_auth
        assert server.mutual_auth_secret_name == 'ibm-cert-store/ca-secret'
        assert result.warnings == [messages.MUTUAL_AUTH_CUSTOM_PORT]

    def test_mutual_auth_without_port(self):
        result = resolve(cafe({P + 'mutual-auth': 'secretName=ca-secret'}),
                         secrets=[make_secret('ca-secret', 'default', {'ca.crt': 'CA'})])
        assert not result.config.servers[0].annotations.set_mutual_auth
        assert result.warnings == []

    def test_mutual_auth_missing_secret(self):
        result = resolve(cafe({P + 'mutual-auth': 'secretName=ca-secret port=443'}))
        assert isinstance(result.errors[0], SecretNotFoundError)


class TestSnippets:
    def test_location_snippets_named_override_all(self):
        raw = (
            "serviceName=tea-svc\n"
            "proxy_set_header X-Tea tea;\n"
            "<EOS>\n"
            "proxy_set_header X-All all;\n"
            "<EOS>\n"
        )
        by_service = locations(resolve(cafe({P + 'location-snippets': raw})))
        assert by_service['tea-svc'].annotations.location_snippet == ['proxy_set_header X-Tea tea;']
        assert by_service['coffee-svc'].annotations.location_snippet == ['proxy_set_header X-All all;']

    def test_header_modifiers_follow_location_snippets(self):
        result = resolve(cafe({
            P + 'location-snippets': "rewrite_log on;\n",
            P + 'proxy-add-headers': "serviceName=tea-svc {\nX-Tea green;\n}",
            P + 'response-add-headers': "serviceName=tea-svc {\nX-Cup: big;\n}",
            P + 'response-remove-headers': "serviceName=tea-svc {\nX-Powered-By;\n}",
        }))
        assert locations(result)['tea-svc'].annotations.location_snippet == [
            'rewrite_log on;',
            'proxy_set_header X-Tea green;',
            'more_set_headers X-Cup: big;',
            'more_clear_headers X-Powered-By;',
        ]
        assert locations(result)['coffee-svc'].annotations.location_snippet == ['rewrite_log on;']

    def test_server_snippets_and_header_buffers(self):
        result = resolve(cafe({
            P + 'server-snippets': "location = /health {\n  return 200;\n}\n",
            P + 'large-client-header-buffers': 'number=4 size=16k',
        }))
        assert result.config.servers[0].annotations.server_snippet == [
            'location = /health {',
            '  return 200;',
            '}',
            'large_client_header_buffers 4 16k;',
        ]

    def test_keepalive_scopes(self):
        result = resolve(cafe({
            P + 'keepalive-requests': 'serviceName=tea-svc requests=32',
            P + 'keepalive-timeout': 'timeout=60s',
        }))
        assert result.config.servers[0].annotations.server_snippet == ['keepalive_timeout 60s;']
        assert locations(result)['tea-svc'].annotations.location_snippet == ['keepalive_requests 32;']
        assert locations(result)['coffee-svc'].annotations.location_snippet == []


class TestAppID:
    def test_api_protection(self):
        result = resolve(cafe({P + 'appid-auth': 'bindSecret=binding-my-appid namespace=default serviceName=tea-svc'}))
        tea = locations(result)['tea-svc'].annotations

        assert tea.appid_auth_url == 'https://$host/oauth2-my-appid/auth'
        assert tea.appid_sign_in_url == ''
        assert tea.location_snippet == appid_snippet('my_appid', True)
        assert locations(result)['coffee-svc'].annotations.appid_auth_url == ''
        assert result.warnings == [messages.APPID_AUTH_ENABLE_ADDON, messages.APPID_AUTH_ADD_CALLBACKS]

    def test_web_protection_without_id_token(self):
        result = resolve(cafe({P + 'appid-auth':
                               'bindSecret=binding-appid requestType=web idToken=false serviceName=tea-svc'}))
        tea = locations(result)['tea-svc'].annotations
        assert tea.appid_sign_in_url == 'https://$host/oauth2-appid/start?rd=$escaped_request_uri'
        assert tea.location_snippet == appid_snippet('appid', False)

    def test_appid_in_other_namespace_warns(self):
        result = resolve(cafe({P + 'appid-auth': 'bindSecret=binding-appid namespace=auth serviceName=tea-svc'}))
        assert messages.APPID_AUTH_DIFFERENT_NAMESPACE in result.warnings

    def test_snippet_conflict_suppresses_auth(self):
        result = resolve(cafe({
            P + 'location-snippets': "serviceName=tea-svc\nproxy_set_header Authorization $http_x;\n<EOS>\n",
            P + 'appid-auth': 'bindSecret=binding-appid serviceName=tea-svc;bindSecret=binding-appid serviceName=coffee-svc',
        }))
        by_service = locations(result)

        assert messages.APPID_AUTH_SNIPPET_CONFLICT in result.warnings
        assert by_service['tea-svc'].annotations.location_snippet == ['proxy_set_header Authorization $http_x;']
        assert by_service['tea-svc'].annotations.appid_auth_url == ''
        assert by_service['coffee-svc'].annotations.appid_auth_url == ''
        assert by_service['coffee-svc'].annotations.location_snippet == appid_snippet('appid', True)


class TestLocationModifier:
    def test_case_insensitive_regex(self):
        result = resolve(cafe({P + 'location-modifier': "serviceName=tea-svc modifier='~*'"}))
        assert locations(result)['tea-svc'].annotations.use_regex
        assert not locations(result)['coffee-svc'].annotations.use_regex
        assert result.warnings == [messages.LOCATION_MODIFIER]

    def test_exact_match_sets_path_type(self):
        result = resolve(cafe({P + 'location-modifier': "serviceName=tea-svc modifier='='"}))
        assert locations(result)['tea-svc'].path_type == 'Exact'
        assert locations(result)['coffee-svc'].path_type == 'ImplementationSpecific'

    def test_exact_match_requires_enhancements(self):
        result = resolve(cafe({P + 'location-modifier': "serviceName=tea-svc modifier='='"}), enhancements=False)
        assert result.config is None
        assert isinstance(result.errors[0], InvalidIngressError)
        assert messages.LOCATION_MODIFIER_UNSUPPORTED in result.warnings

    @pytest.mark.parametrize("modifier", ['~', '^~'])
    def test_unsupported_modifiers(self, modifier):
        result = resolve(cafe({P + 'location-modifier': f"serviceName=tea-svc modifier='{modifier}'"}))
        assert result.config is None
        assert messages.LOCATION_MODIFIER_UNSUPPORTED in result.warnings
