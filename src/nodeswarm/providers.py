"""Membership providers and the factory selecting one from configuration.
"""
import contextlib
import json
import logging
import pathlib
import threading
import time

import requests
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from nodeswarm.config import SwarmConfig
from nodeswarm.errors import ProviderError
from nodeswarm.membership import EventKind, MembershipEvent
from nodeswarm.membership import MembershipProvider, Node, Subscription
from nodeswarm.monitor import Monitor, retry_with_backoff
from nodeswarm.schema import ensure_database_ready, get_table_names

logger = logging.getLogger(__name__)

__all__ = [
    'StandaloneProvider',
    'KubernetesProvider',
    'DatabaseProvider',
    'DatabaseContext',
    'build_connection_string',
    'create_provider',
]


# ============================================================
# STANDALONE
# ============================================================

class StandaloneProvider(MembershipProvider):
    """Single-node membership made of the local node only.
    """

    def __init__(self, node_id: str, metadata: dict = None):
        self.node_id = node_id
        self.metadata = metadata or {}

    def snapshot(self) -> dict[str, Node]:
        return {self.node_id: Node(self.node_id, dict(self.metadata))}


# ============================================================
# KUBERNETES
# ============================================================

def endpoint_addresses(endpoints: dict) -> dict[str, Node]:
    """Extract ready addresses of an Endpoints object as nodes keyed by ip.
    """
    name = (endpoints.get('metadata') or {}).get('name')
    nodes = {}
    for subset in endpoints.get('subsets') or []:
        for address in subset.get('addresses') or []:
            ip = address.get('ip')
            if not ip:
                continue
            metadata = {'endpoints': name}
            if address.get('hostname'):
                metadata['hostname'] = address['hostname']
            if address.get('targetRef', {}).get('name'):
                metadata['pod'] = address['targetRef']['name']
            nodes[ip] = Node(ip, metadata)
    return nodes


class KubernetesProvider(MembershipProvider):
    """Pods behind the Endpoints objects of the current namespace.

    Credentials come from the service account folder. The node set can be
    narrowed with a label selector; node ids are pod ips.
    """

    def __init__(self, config: SwarmConfig, session: requests.Session = None):
        self.service_account_path = pathlib.Path(config.service_account_path)
        self.kubernetes_master = config.kubernetes_master
        self.selector = config.selector
        self.request_timeout = config.request_timeout_sec
        self.session = session or requests.Session()
        self.cursor = None
        self._endpoints = {}
        self._lock = threading.Lock()

    def _read(self, name: str) -> str:
        try:
            return (self.service_account_path / name).read_text().strip()
        except OSError as e:
            raise ProviderError(f'Unable to read service account {name}: {e}') from e

    @property
    def url(self) -> str:
        namespace = self._read('namespace')
        return f'https://{self.kubernetes_master}/api/v1/namespaces/{namespace}/endpoints'

    def _request(self, params: dict, stream: bool = False) -> requests.Response:
        if self.selector:
            params['labelSelector'] = self.selector
        ca = self.service_account_path / 'ca.crt'
        try:
            return self.session.get(
                self.url,
                params=params,
                headers={'Authorization': f'Bearer {self._read("token")}'},
                verify=str(ca) if ca.exists() else False,
                timeout=None if stream else self.request_timeout,
                stream=stream,
            )
        except requests.RequestException as e:
            raise ProviderError(f'Kubernetes request failed: {e}') from e

    def _nodes(self) -> dict[str, Node]:
        nodes = {}
        for addresses in self._endpoints.values():
            for ip, node in addresses.items():
                nodes.setdefault(ip, node)
        return nodes

    def snapshot(self) -> dict[str, Node]:
        response = self._request({})
        if not response.ok:
            raise ProviderError(f'Kubernetes endpoints list answered {response.status_code}: {response.text}')
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f'Unable to decode endpoints list: {e}') from e

        with self._lock:
            self._endpoints = {
                (item.get('metadata') or {}).get('name'): endpoint_addresses(item)
                for item in payload.get('items') or []
            }
            self.cursor = (payload.get('metadata') or {}).get('resourceVersion')
            nodes = self._nodes()
        logger.debug(f'Kubernetes snapshot: {sorted(nodes)} at version {self.cursor}')
        return nodes

    def watch(self, cursor: str = None) -> Subscription:
        params = {'watch': 'true'}
        if cursor:
            params['resourceVersion'] = cursor
        response = self._request(params, stream=True)
        if response.status_code == 410:
            response.close()
            self.cursor = None
            raise ProviderError('Kubernetes watch cursor expired', resync=True)
        if not response.ok:
            response.close()
            raise ProviderError(f'Kubernetes watch answered {response.status_code}')
        return Subscription(self._events(response.iter_lines()), close=response.close)

    def _events(self, lines):
        for line in lines:
            if not line:
                continue
            try:
                event = json.loads(line)
            except ValueError as e:
                yield MembershipEvent(EventKind.ERROR, error=ProviderError(f'Unable to decode watch event: {e}'))
                return
            yield from self.apply(event)

    def apply(self, event: dict) -> list[MembershipEvent]:
        """Translate one Endpoints watch event into node added/removed events.
        """
        kind = event.get('type')
        obj = event.get('object') or {}
        if kind == 'ERROR':
            gone = obj.get('code') == 410
            if gone:
                self.cursor = None
            return [MembershipEvent(EventKind.ERROR, error=ProviderError(obj.get('message', 'watch error'), resync=gone))]

        metadata = obj.get('metadata') or {}
        with self._lock:
            before = self._nodes()
            if kind == 'DELETED':
                self._endpoints.pop(metadata.get('name'), None)
            else:
                self._endpoints[metadata.get('name')] = endpoint_addresses(obj)
            after = self._nodes()
            if metadata.get('resourceVersion'):
                self.cursor = metadata['resourceVersion']

        events = [MembershipEvent(EventKind.ADDED, node=after[ip], cursor=self.cursor)
                  for ip in sorted(after.keys() - before.keys())]
        events.extend(MembershipEvent(EventKind.REMOVED, node=before[ip], cursor=self.cursor)
                      for ip in sorted(before.keys() - after.keys()))
        return events

    def close(self) -> None:
        self.session.close()


# ============================================================
# DATABASE
# ============================================================

def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


class DatabaseContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: SwarmConfig, connection_string: str = None):
        """Initialize database context.

        Args:
            config: Swarm configuration with connection parameters
            connection_string: SQLAlchemy URL overriding the configured one
        """
        url = connection_string or config.database_url or build_connection_string(
            config.db_host, config.db_port, config.db_name, config.db_user, config.db_password)
        options = {'pool_pre_ping': True}
        if url.startswith('postgresql'):
            options.update(pool_size=10, max_overflow=5)
        self.engine = create_engine(url, **options)
        self.appname = config.appname
        self.tables = get_table_names(config.appname)

    def execute(self, sql: str, params: dict = None):
        """Execute SQL statement with automatic commit.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            conn.commit()
            return result

    def query(self, sql: str, params: dict = None) -> list:
        """Execute query and return all rows.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return list(result)

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        with contextlib.suppress(Exception):
            self.engine.dispose()


class HeartbeatMonitor(Monitor):
    """Sends periodic heartbeats to maintain node registration.
    """

    def __init__(self, provider: 'DatabaseProvider', shutdown_event: threading.Event):
        super().__init__(f'heartbeat-{provider.node_id}', provider.heartbeat_interval, shutdown_event)
        self.provider = provider

    def check(self) -> None:
        """Send heartbeat update, re-registering if the row was removed.
        """
        db = self.provider.db
        now = time.time()
        sql = f"""
        UPDATE {db.tables["Node"]}
        SET last_heartbeat = :heartbeat
        WHERE name = :name
        """
        with db.engine.connect() as conn:
            updated = conn.execute(text(sql), {'heartbeat': now, 'name': self.provider.node_id}).rowcount
            conn.commit()
        if updated == 0:
            logger.warning(f'Node {self.provider.node_id} row missing, registering again')
            self.provider.register()
        self.provider.last_heartbeat_sent = now
        logger.debug(f'Heartbeat sent by {self.provider.node_id}')


class DatabaseProvider(MembershipProvider):
    """Membership backed by a heartbeat table.

    Each process registers a row for itself and refreshes it from a heartbeat
    thread. Live nodes are the rows heartbeated within heartbeat_timeout.
    """

    def __init__(self, node_id: str, config: SwarmConfig, metadata: dict = None,
                 connection_string: str = None):
        """Initialize database provider.

        Args:
            node_id: This node's id
            config: Swarm configuration
            metadata: Metadata stored with this node's row
            connection_string: SQLAlchemy URL overriding the configured one
        """
        self.node_id = node_id
        self.metadata = metadata or {}
        self.db = DatabaseContext(config, connection_string)
        self.heartbeat_interval = config.heartbeat_interval_sec
        self.heartbeat_timeout = config.heartbeat_timeout_sec
        self.created_on = time.time()
        self.last_heartbeat_sent = None
        self._shutdown_event = threading.Event()
        self._heartbeat = None

    def start(self) -> None:
        """Create the table if needed, register this node and start heartbeats.

        Raises
            ProviderError: If the database cannot be reached
        """
        try:
            ensure_database_ready(self.db.engine, self.db.appname)
            self.register()
        except SQLAlchemyError as e:
            raise ProviderError(f'Unable to start database membership: {e}') from e
        if self._heartbeat is None:
            self._heartbeat = HeartbeatMonitor(self, self._shutdown_event)
            self._heartbeat.start()

    @retry_with_backoff(max_attempts=3, base_delay=0.5, exceptions=(SQLAlchemyError,))
    def register(self) -> None:
        """Register node with initial heartbeat.
        """
        self.last_heartbeat_sent = time.time()
        sql = f"""
        INSERT INTO {self.db.tables["Node"]} (name, metadata, created_on, last_heartbeat)
        VALUES (:name, :metadata, :created_on, :heartbeat)
        ON CONFLICT (name) DO UPDATE
        SET last_heartbeat = EXCLUDED.last_heartbeat, metadata = EXCLUDED.metadata
        """
        self.db.execute(sql, {
            'name': self.node_id,
            'metadata': json.dumps(self.metadata),
            'created_on': self.created_on,
            'heartbeat': self.last_heartbeat_sent
        })
        logger.info(f'Node {self.node_id} registered with heartbeat')

    def snapshot(self) -> dict[str, Node]:
        sql = f"""
        SELECT name, metadata
        FROM {self.db.tables["Node"]}
        WHERE last_heartbeat > :cutoff
        ORDER BY created_on ASC, name ASC
        """
        try:
            rows = self.db.query(sql, {'cutoff': time.time() - self.heartbeat_timeout})
        except SQLAlchemyError as e:
            raise ProviderError(f'Unable to read active nodes: {e}') from e
        return {row[0]: Node(row[0], json.loads(row[1]) if row[1] else {}) for row in rows}

    def close(self) -> None:
        """Stop heartbeats and remove this node's row.
        """
        self._shutdown_event.set()
        if self._heartbeat is not None:
            self._heartbeat.join()
            self._heartbeat = None
        try:
            self.db.execute(f'DELETE FROM {self.db.tables["Node"]} WHERE name = :name', {'name': self.node_id})
            logger.debug(f'Cleared {self.node_id} from {self.db.tables["Node"]}')
        except SQLAlchemyError as e:
            logger.debug(f'Failed to cleanup node {self.node_id}: {e}')
        self.db.dispose()


# ============================================================
# FACTORY
# ============================================================

def create_provider(config: SwarmConfig) -> MembershipProvider:
    """Select the membership provider named by config.provider.

    'auto' picks kubernetes when a service account token is mounted,
    database when database_url is set, standalone otherwise.
    """
    kind = (config.provider or 'auto').lower()
    if kind == 'auto':
        if (pathlib.Path(config.service_account_path) / 'token').exists():
            kind = 'kubernetes'
        elif config.database_url:
            kind = 'database'
        else:
            kind = 'standalone'

    logger.info(f'Using {kind} membership provider')
    if kind == 'kubernetes':
        return KubernetesProvider(config)
    if kind == 'database':
        return DatabaseProvider(config.node_id, config)
    if kind == 'standalone':
        return StandaloneProvider(config.node_id)
    raise ValueError(f'Unknown membership provider {config.provider!r}')
