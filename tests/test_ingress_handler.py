"""
Tests for the per-run Ingress migration.
"""

import pytest

from ingress_migrator import messages
from ingress_migrator.config import RunConfig
from ingress_migrator.errors import (
    ALBPortCollisionError,
    MigrationFailedError,
    MigrationModeMismatchError,
    ResourceMigrationError,
    TCPPortsError,
)
from ingress_migrator.ingress_handler import IngressMigrationHandler, skip_reason
from ingress_migrator.ledger import LedgerRecord, MigrationStatusLedger

from tests.fakes import CAFE_RULES, make_config_map, make_ingress, make_kube


P = 'ingress.bluemix.net/'

PRODUCTION = RunConfig(mode='production', read_only=False, output_dir='/tmp/out')
TEST = RunConfig(mode='test', read_only=False, test_domain='t.example.com', test_secret='t-tls',
                 output_dir='/tmp/out')


def legacy_config_map():
    return make_config_map('ibm-cloud-provider-ingress-cm', data={'public-ports': '80;443;9090;9091'})


def tcp(service, port='9090', service_port='8080'):
    return {P + 'tcp-ports': f'serviceName={service} ingressPort={port} servicePort={service_port}'}


class TestSkipReason:
    @pytest.mark.parametrize("ingress,mode", [
        (make_ingress(name='alb-health', namespace='kube-system'), 'production'),
        (make_ingress(name='k8s-alb-health', namespace='kube-system'), 'production'),
        (make_ingress(annotations={'kubernetes.io/ingress.class': 'public-iks-k8s-nginx'}), 'production'),
        (make_ingress(ingress_class_name='test'), 'test'),
        (make_ingress(annotations={P + 'ALB-ID': 'private-cr1-alb1'}), 'test'),
    ])
    def test_skipped(self, ingress, mode):
        assert skip_reason(ingress, mode)

    @pytest.mark.parametrize("ingress,mode", [
        (make_ingress(name='alb-health', namespace='default'), 'production'),
        (make_ingress(annotations={'kubernetes.io/ingress.class': 'nginx'}), 'production'),
        (make_ingress(annotations={P + 'ALB-ID': 'private-cr1-alb1'}), 'test-with-private'),
        (make_ingress(annotations={P + 'ALB-ID': 'public-cr1-alb1'}), 'test'),
    ])
    def test_migrated(self, ingress, mode):
        assert skip_reason(ingress, mode) is None


class TestIngressMigrationHandler:
    def test_coffee_and_tea(self):
        kube = make_kube(
            ingresses=[make_ingress(rules=CAFE_RULES, annotations=tcp('coffee-svc'))],
            config_maps=[legacy_config_map()],
        )
        entries = IngressMigrationHandler(kube, PRODUCTION).migrate()

        assert sorted(name for _, name in kube.networking_v1.ingresses) == [
            'cafe-ingress-coffee-svc-coffee',
            'cafe-ingress-server',
            'cafe-ingress-tea-svc-tea',
        ]
        assert kube.v1.config_maps[('kube-system', 'generic-k8s-ingress-tcp-ports')].data == {
            '9090': 'default/coffee-svc:8080'}

        entry, = entries
        assert (entry.kind, entry.name, entry.namespace) == ('Ingress', 'cafe-ingress', 'default')
        assert entry.migrated_as == [
            'Ingress/cafe-ingress-server',
            'Ingress/cafe-ingress-coffee-svc-coffee',
            'Ingress/cafe-ingress-tea-svc-tea',
            'ConfigMap/generic-k8s-ingress-tcp-ports',
        ]
        assert entry.warnings == [messages.TCP_PORTS_WITHOUT_ALB_ID]

        record = MigrationStatusLedger(kube).read()
        assert record.mode == 'production'
        assert record.migrated_resources == entries

    def test_skipped_resources_are_not_recorded(self):
        kube = make_kube(ingresses=[
            make_ingress(name='alb-health', namespace='kube-system', rules=CAFE_RULES),
            make_ingress(name='done', rules=CAFE_RULES, ingress_class_name='public-iks-k8s-nginx'),
        ])
        assert IngressMigrationHandler(kube, PRODUCTION).migrate() == []
        assert kube.networking_v1.ingresses == {}

    def test_existing_ingress_is_replaced(self):
        kube = make_kube(ingresses=[make_ingress(rules=CAFE_RULES)])
        IngressMigrationHandler(kube, PRODUCTION).migrate()
        IngressMigrationHandler(kube, PRODUCTION).migrate()

        assert ('replace_ingress', 'default', 'cafe-ingress-server') in kube.networking_v1.calls
        assert len(MigrationStatusLedger(kube).read().migrated_resources) == 2

    def test_resource_errors_are_collected(self):
        kube = make_kube(ingresses=[
            make_ingress(name='broken', rules=CAFE_RULES, annotations={P + 'proxy-read-timeout': 'timeout=soon'}),
            make_ingress(name='good', rules=CAFE_RULES),
        ])
        with pytest.raises(MigrationFailedError) as excinfo:
            IngressMigrationHandler(kube, PRODUCTION).migrate()

        error, = excinfo.value.errors
        assert isinstance(error, ResourceMigrationError)
        assert (error.namespace, error.name) == ('default', 'broken')
        assert [r.name for r in MigrationStatusLedger(kube).read().migrated_resources] == ['good']
        assert ('default', 'good-server') in kube.networking_v1.ingresses
        assert ('default', 'broken-server') not in kube.networking_v1.ingresses

    def test_tcp_failure_keeps_the_written_resource_in_the_ledger(self):
        kube = make_kube(ingresses=[make_ingress(rules=CAFE_RULES, annotations=tcp('coffee-svc'))])
        with pytest.raises(MigrationFailedError) as excinfo:
            IngressMigrationHandler(kube, PRODUCTION).migrate()

        error, = excinfo.value.errors
        assert isinstance(error.cause, TCPPortsError)
        assert ('default', 'cafe-ingress-server') in kube.networking_v1.ingresses
        entry, = MigrationStatusLedger(kube).read().migrated_resources
        assert entry.migrated_as == [
            'Ingress/cafe-ingress-server',
            'Ingress/cafe-ingress-coffee-svc-coffee',
            'Ingress/cafe-ingress-tea-svc-tea',
        ]
        assert entry.warnings == [messages.ERROR_CREATING_TCP_CONFIGMAPS]

    def test_tcp_failure_in_test_mode_remembers_hostnames(self):
        kube = make_kube(ingresses=[make_ingress(name='tea', rules=CAFE_RULES, annotations=tcp('tea-svc'))])
        with pytest.raises(MigrationFailedError):
            IngressMigrationHandler(kube, TEST).migrate()

        server = kube.networking_v1.ingresses[('default', 'tea-server')]
        assert MigrationStatusLedger(kube).read().subdomain_map == {'cafe.example.com': server.spec.rules[0].host}

    def test_write_failure_adds_warning(self):
        kube = make_kube(ingresses=[make_ingress(rules=CAFE_RULES)])
        kube.networking_v1.failing.add('cafe-ingress-tea-svc-tea')
        entry, = IngressMigrationHandler(kube, PRODUCTION).migrate()

        assert entry.migrated_as == ['Ingress/cafe-ingress-server', 'Ingress/cafe-ingress-coffee-svc-coffee']
        assert entry.warnings == [messages.ERROR_CREATING_INGRESS_RESOURCES]

    def test_port_collision_aborts_and_records_progress(self):
        kube = make_kube(
            ingresses=[
                make_ingress(name='coffee', rules=CAFE_RULES, annotations=tcp('coffee-svc')),
                make_ingress(name='tea', rules=CAFE_RULES, annotations=tcp('tea-svc')),
                make_ingress(name='later', rules=CAFE_RULES),
            ],
            config_maps=[legacy_config_map()],
        )
        with pytest.raises(ALBPortCollisionError):
            IngressMigrationHandler(kube, PRODUCTION).migrate()

        assert [r.name for r in MigrationStatusLedger(kube).read().migrated_resources] == ['coffee']
        assert kube.v1.config_maps[('kube-system', 'generic-k8s-ingress-tcp-ports')].data == {
            '9090': 'default/coffee-svc:8080'}
        assert ('default', 'later-server') not in kube.networking_v1.ingresses
        assert not any(name.startswith('tea') for _, name in kube.networking_v1.ingresses)

    def test_same_port_for_same_service_is_accepted(self):
        kube = make_kube(
            ingresses=[
                make_ingress(name='one', rules=CAFE_RULES, annotations=tcp('coffee-svc')),
                make_ingress(name='two', rules=CAFE_RULES, annotations=tcp('coffee-svc')),
            ],
            config_maps=[legacy_config_map()],
        )
        assert len(IngressMigrationHandler(kube, PRODUCTION).migrate()) == 2

    def test_mode_mismatch_aborts_before_writing(self):
        kube = make_kube(
            ingresses=[make_ingress(rules=CAFE_RULES)],
            config_maps=[make_config_map('ibm-ingress-migration-status', data=LedgerRecord(mode='test').to_data())],
        )
        with pytest.raises(MigrationModeMismatchError):
            IngressMigrationHandler(kube, PRODUCTION).migrate()

        assert kube.networking_v1.ingresses == {}
        assert MigrationStatusLedger(kube).read().mode == 'test'

    def test_test_mode_hostnames_are_remembered(self):
        kube = make_kube(ingresses=[make_ingress(rules=CAFE_RULES)])
        IngressMigrationHandler(kube, TEST).migrate()

        subdomain_map = MigrationStatusLedger(kube).read().subdomain_map
        test_host = subdomain_map['cafe.example.com']
        server = kube.networking_v1.ingresses[('default', 'cafe-ingress-server')]
        assert server.metadata.annotations['kubernetes.io/ingress.class'] == 'test'
        assert [r.host for r in server.spec.rules] == [test_host]
        assert server.spec.tls[0].secret_name == 't-tls'

        IngressMigrationHandler(kube, TEST).migrate()
        assert MigrationStatusLedger(kube).read().subdomain_map == {'cafe.example.com': test_host}
        server = kube.networking_v1.ingresses[('default', 'cafe-ingress-server')]
        assert [r.host for r in server.spec.rules] == [test_host]

    def test_read_only_run_records_resources(self):
        kube = make_kube(ingresses=[make_ingress(rules=CAFE_RULES)], read_only=True)
        IngressMigrationHandler(kube, PRODUCTION).migrate()

        assert kube.networking_v1.calls == []
        assert kube.v1.writes() == []
        assert sorted(kube.recorded['Ingress']['default']) == [
            'cafe-ingress-coffee-svc-coffee', 'cafe-ingress-server', 'cafe-ingress-tea-svc-tea']
        assert 'ibm-ingress-migration-status' in kube.recorded['ConfigMap']['kube-system']
