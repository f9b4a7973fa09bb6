"""Membership providers: standalone, database heartbeat table and Kubernetes endpoints.

Tests verify:
- Database provider registration, liveness cutoff, heartbeat and cleanup (SQLite)
- Kubernetes endpoints snapshot and watch event translation
- Provider selection from configuration
"""
import json
import time

import pytest
from asserts import assert_equal, assert_false, assert_is_instance, assert_is_none
from asserts import assert_true
from sqlalchemy import create_engine

from fixtures import make_config, wait_for
from nodeswarm.errors import ProviderError
from nodeswarm.membership import EventKind
from nodeswarm.providers import DatabaseProvider, KubernetesProvider
from nodeswarm.providers import StandaloneProvider, build_connection_string
from nodeswarm.providers import create_provider, endpoint_addresses
from nodeswarm.schema import get_table_names, verify_tables_exist


def test_standalone_provider():
    provider = StandaloneProvider('10.0.0.1', {'role': 'worker'})
    snapshot = provider.snapshot()
    assert_equal(list(snapshot), ['10.0.0.1'])
    assert_equal(snapshot['10.0.0.1'].metadata, {'role': 'worker'})
    assert_is_none(provider.watch())


def test_build_connection_string():
    assert_equal(build_connection_string('db', 5432, 'swarm', 'user', 'secret'),
                 'postgresql+psycopg://user:secret@db:5432/swarm')


# ============================================================
# DATABASE
# ============================================================

def make_db_provider(node_id, sqlite_url, **overrides):
    config = make_config(node_id=node_id, heartbeat_interval_sec=0.05, heartbeat_timeout_sec=1, **overrides)
    return DatabaseProvider(node_id, config, metadata={'node': node_id}, connection_string=sqlite_url)


class TestDatabaseProvider:

    def test_start_creates_table(self, sqlite_url):
        provider = make_db_provider('node1', sqlite_url)
        try:
            provider.start()
            engine = create_engine(sqlite_url)
            assert_equal(verify_tables_exist(engine), {'Node': True})
            engine.dispose()
        finally:
            provider.close()

    def test_table_prefix(self):
        assert_equal(get_table_names('myapp_'), {'Node': 'myapp_node'})

    def test_nodes_see_each_other(self, sqlite_url):
        """Verify every registered node appears in the snapshot with its metadata.
        """
        providers = [make_db_provider(f'node{i}', sqlite_url) for i in (1, 2, 3)]
        try:
            for provider in providers:
                provider.start()
            snapshot = providers[0].snapshot()
            assert_equal(set(snapshot), {'node1', 'node2', 'node3'})
            assert_equal(snapshot['node2'].metadata, {'node': 'node2'})
        finally:
            for provider in providers:
                provider.close()

    def test_close_removes_row(self, sqlite_url):
        first = make_db_provider('node1', sqlite_url)
        second = make_db_provider('node2', sqlite_url)
        try:
            first.start()
            second.start()
            second.close()
            assert_equal(set(first.snapshot()), {'node1'})
        finally:
            first.close()

    def test_stale_nodes_are_excluded(self, sqlite_url):
        """Verify a row whose heartbeat is older than the timeout is not live.
        """
        provider = make_db_provider('node1', sqlite_url)
        try:
            provider.start()
            provider.db.execute(
                f'INSERT INTO {provider.db.tables["Node"]} (name, metadata, created_on, last_heartbeat) '
                'VALUES (:name, :metadata, :created, :heartbeat)',
                {'name': 'ghost', 'metadata': None, 'created': time.time() - 60, 'heartbeat': time.time() - 60})
            assert_equal(set(provider.snapshot()), {'node1'})
        finally:
            provider.close()

    def test_heartbeat_advances_and_reregisters(self, sqlite_url):
        """Verify the heartbeat thread refreshes the row and restores it when deleted.
        """
        provider = make_db_provider('node1', sqlite_url)
        try:
            provider.start()
            first = provider.last_heartbeat_sent
            assert_true(wait_for(lambda: provider.last_heartbeat_sent > first))

            provider.db.execute(f'DELETE FROM {provider.db.tables["Node"]}')
            assert_true(wait_for(lambda: 'node1' in provider.snapshot()))
        finally:
            provider.close()

    def test_register_is_idempotent(self, sqlite_url):
        provider = make_db_provider('node1', sqlite_url)
        try:
            provider.start()
            provider.register()
            rows = provider.db.query(f'SELECT name FROM {provider.db.tables["Node"]}')
            assert_equal([row[0] for row in rows], ['node1'])
        finally:
            provider.close()

    def test_unreadable_database_raises_provider_error(self, tmp_path):
        provider = make_db_provider('node1', f'sqlite:///{tmp_path / "empty.db"}')
        try:
            with pytest.raises(ProviderError):
                provider.snapshot()
        finally:
            provider.db.dispose()


# ============================================================
# KUBERNETES
# ============================================================

def endpoints(name, *ips, version=None):
    metadata = {'name': name}
    if version:
        metadata['resourceVersion'] = version
    return {
        'metadata': metadata,
        'subsets': [{'addresses': [{'ip': ip, 'targetRef': {'name': f'pod-{ip}'}} for ip in ips]}],
    }


class FakeResponse:

    def __init__(self, status_code=200, payload=None, lines=()):
        self.status_code = status_code
        self.payload = payload
        self.lines = [json.dumps(line).encode() for line in lines]
        self.closed = False

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        return json.dumps(self.payload)

    def json(self):
        return self.payload

    def iter_lines(self):
        yield from self.lines

    def close(self):
        self.closed = True


class FakeSession:

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.responses.pop(0)

    def close(self):
        self.closed = True


@pytest.fixture
def service_account(tmp_path):
    (tmp_path / 'namespace').write_text('swarm-ns\n')
    (tmp_path / 'token').write_text('secret-token\n')
    return tmp_path


def make_k8s(service_account, *responses, **overrides):
    config = make_config(service_account_path=str(service_account), kubernetes_master='k8s.local', **overrides)
    session = FakeSession(*responses)
    return KubernetesProvider(config, session=session), session


class TestKubernetesProvider:

    def test_endpoint_addresses(self):
        nodes = endpoint_addresses(endpoints('svc', '10.0.0.1', '10.0.0.2'))
        assert_equal(set(nodes), {'10.0.0.1', '10.0.0.2'})
        assert_equal(nodes['10.0.0.1'].metadata, {'endpoints': 'svc', 'pod': 'pod-10.0.0.1'})

    def test_snapshot_lists_endpoints(self, service_account):
        payload = {'metadata': {'resourceVersion': '100'},
                   'items': [endpoints('svc-a', '10.0.0.1', '10.0.0.2'), endpoints('svc-b', '10.0.0.2', '10.0.0.3')]}
        provider, session = make_k8s(service_account, FakeResponse(payload=payload), app_name='myapp')

        snapshot = provider.snapshot()
        assert_equal(set(snapshot), {'10.0.0.1', '10.0.0.2', '10.0.0.3'})
        assert_equal(provider.cursor, '100')

        url, kwargs = session.requests[0]
        assert_equal(url, 'https://k8s.local/api/v1/namespaces/swarm-ns/endpoints')
        assert_equal(kwargs['headers'], {'Authorization': 'Bearer secret-token'})
        assert_equal(kwargs['params'], {'labelSelector': 'app=myapp'})
        assert_false(kwargs['verify'])

    def test_snapshot_error_status(self, service_account):
        provider, _ = make_k8s(service_account, FakeResponse(status_code=403, payload={'message': 'forbidden'}))
        with pytest.raises(ProviderError):
            provider.snapshot()

    def test_missing_service_account(self, tmp_path):
        provider, _ = make_k8s(tmp_path / 'absent', FakeResponse(payload={}))
        with pytest.raises(ProviderError):
            provider.snapshot()

    def test_apply_translates_endpoint_changes(self, service_account):
        """Verify watch events become per-node added/removed events.
        """
        payload = {'metadata': {'resourceVersion': '1'}, 'items': [endpoints('svc', '10.0.0.1', '10.0.0.2')]}
        provider, _ = make_k8s(service_account, FakeResponse(payload=payload))
        provider.snapshot()

        events = provider.apply({'type': 'MODIFIED', 'object': endpoints('svc', '10.0.0.2', '10.0.0.3', version='2')})
        assert_equal([(e.kind, e.node.id) for e in events],
                     [(EventKind.ADDED, '10.0.0.3'), (EventKind.REMOVED, '10.0.0.1')])
        assert_equal(provider.cursor, '2')

        events = provider.apply({'type': 'DELETED', 'object': endpoints('svc', version='3')})
        assert_equal(sorted(e.node.id for e in events), ['10.0.0.2', '10.0.0.3'])
        assert_true(all(e.kind == EventKind.REMOVED for e in events))

    def test_shared_address_survives_one_endpoint_removal(self, service_account):
        payload = {'metadata': {'resourceVersion': '1'},
                   'items': [endpoints('svc-a', '10.0.0.1'), endpoints('svc-b', '10.0.0.1')]}
        provider, _ = make_k8s(service_account, FakeResponse(payload=payload))
        provider.snapshot()
        assert_equal(provider.apply({'type': 'DELETED', 'object': endpoints('svc-a', version='2')}), [])

    def test_gone_error_event_requests_resync(self, service_account):
        provider, _ = make_k8s(service_account)
        provider.cursor = '5'
        events = provider.apply({'type': 'ERROR', 'object': {'code': 410, 'message': 'too old resource version'}})
        assert_equal(events[0].kind, EventKind.ERROR)
        assert_true(events[0].error.resync)
        assert_is_none(provider.cursor)

    def test_watch_streams_events_from_cursor(self, service_account):
        lines = [{'type': 'ADDED', 'object': endpoints('svc', '10.0.0.9', version='8')}]
        response = FakeResponse(lines=lines)
        provider, session = make_k8s(service_account, response)

        subscription = provider.watch('7')
        events = list(subscription)
        assert_equal([(e.kind, e.node.id, e.cursor) for e in events], [(EventKind.ADDED, '10.0.0.9', '8')])
        assert_equal(session.requests[0][1]['params'], {'watch': 'true', 'resourceVersion': '7'})
        assert_is_none(session.requests[0][1]['timeout'])

        subscription.cancel()
        assert_true(response.closed)

    def test_watch_gone_status_requests_resync(self, service_account):
        provider, _ = make_k8s(service_account, FakeResponse(status_code=410))
        provider.cursor = '3'
        with pytest.raises(ProviderError) as exc_info:
            provider.watch('3')
        assert_true(exc_info.value.resync)
        assert_is_none(provider.cursor)


# ============================================================
# FACTORY
# ============================================================

class TestCreateProvider:

    def test_explicit_standalone(self):
        assert_is_instance(create_provider(make_config(provider='standalone')), StandaloneProvider)

    def test_auto_without_environment_is_standalone(self, tmp_path):
        config = make_config(provider='auto', service_account_path=str(tmp_path))
        assert_is_instance(create_provider(config), StandaloneProvider)

    def test_auto_with_token_is_kubernetes(self, service_account):
        config = make_config(provider='auto', service_account_path=str(service_account))
        assert_is_instance(create_provider(config), KubernetesProvider)

    def test_auto_with_database_url(self, tmp_path, sqlite_url):
        config = make_config(provider='auto', service_account_path=str(tmp_path), database_url=sqlite_url)
        provider = create_provider(config)
        try:
            assert_is_instance(provider, DatabaseProvider)
        finally:
            provider.db.dispose()

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_provider(make_config(provider='zookeeper'))
