import os
import re
import socket
from dataclasses import dataclass, field

DEFAULT_PORT = 45892
SERVICE_ACCOUNT_PATH = '/var/run/secrets/kubernetes.io/serviceaccount'


@dataclass
class TaskOptions:
    """Per-task scheduling options.

    timeout is in seconds. single_trigger is False, True or 'N'.
    """
    timeout: float = 30.0
    serialized: bool = True
    single_trigger: bool | str = False
    max_queue_length: int = 20


@dataclass
class SwarmConfig:
    """Configuration for a swarm member.

    All timing parameters are in seconds.
    """
    node_id: str = None
    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    provider: str = 'auto'

    refresh_interval_sec: float = 10
    retry_base_delay_sec: float = 1.0
    retry_max_delay_sec: float = 30
    request_timeout_sec: float = 30
    max_processing_time_sec: float = 300
    wait_on_enter_sec: float = 30
    max_workers: int = 32
    task_defaults: TaskOptions = field(default_factory=TaskOptions)

    service_account_path: str = SERVICE_ACCOUNT_PATH
    kubernetes_master: str = 'kubernetes.default.svc.cluster.local'
    selector: str = None
    app_name: str = None

    database_url: str = None
    db_host: str = 'localhost'
    db_port: int = 5432
    db_name: str = 'nodeswarm'
    db_user: str = 'postgres'
    db_password: str = 'postgres'
    appname: str = 'swarm_'
    heartbeat_interval_sec: float = 5
    heartbeat_timeout_sec: float = 15

    def __post_init__(self):
        if self.node_id is None:
            self.node_id = local_address()
        if self.app_name and not self.selector:
            self.selector = f'app={self.app_name}'

    @classmethod
    def from_env(cls, **overrides) -> 'SwarmConfig':
        """Build configuration from environment variables.

        Keyword overrides win over the environment.
        """
        env = {
            'node_id': os.getenv('SWARM_NODE_ID'),
            'host': os.getenv('SWARM_HOST', '0.0.0.0'),
            'port': int(os.getenv('SWARM_PORT', DEFAULT_PORT)),
            'provider': os.getenv('SWARM_PROVIDER', 'auto'),
            'refresh_interval_sec': float(os.getenv('SWARM_REFRESH_INTERVAL', '10')),
            'request_timeout_sec': float(os.getenv('SWARM_REQUEST_TIMEOUT', '30')),
            'max_workers': int(os.getenv('SWARM_MAX_WORKERS', '32')),
            'service_account_path': os.getenv('KUBERNETES_FOLDER_PATH', SERVICE_ACCOUNT_PATH),
            'kubernetes_master': os.getenv('KUBERNETES_SERVICE_HOST', 'kubernetes.default.svc.cluster.local'),
            'selector': os.getenv('KUBERNETES_SELECTOR'),
            'app_name': app_name_from_env(),
            'database_url': os.getenv('SWARM_DATABASE_URL'),
            'db_host': os.getenv('SWARM_SQL_HOST', 'localhost'),
            'db_port': int(os.getenv('SWARM_SQL_PORT', '5432')),
            'db_name': os.getenv('SWARM_SQL_DATABASE', 'nodeswarm'),
            'db_user': os.getenv('SWARM_SQL_USERNAME', 'postgres'),
            'db_password': os.getenv('SWARM_SQL_PASSWORD', 'postgres'),
            'appname': os.getenv('SWARM_SQL_APPNAME', 'swarm_'),
            'heartbeat_interval_sec': float(os.getenv('SWARM_HEARTBEAT_INTERVAL', '5')),
            'heartbeat_timeout_sec': float(os.getenv('SWARM_HEARTBEAT_TIMEOUT', '15')),
        }
        env.update(overrides)
        return cls(**env)


def app_name_from_env() -> str | None:
    """Derive the application name from the OpenShift build name.

    Strips the trailing build number, so myapp-12 gives myapp.
    """
    build = os.getenv('OPENSHIFT_BUILD_NAME')
    if build:
        match = re.match(r'(.*)-[0-9]+$', build)
        if match:
            return match.group(1)
    return None


def local_addresses() -> list[str]:
    """Return the non-loopback IPv4 addresses of this host.
    """
    addresses = []
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except socket.gaierror:
        infos = []
    for info in infos:
        ip = info[4][0]
        if not ip.startswith('127.') and ip not in addresses:
            addresses.append(ip)
    return addresses


def local_address() -> str:
    addresses = local_addresses()
    return addresses[0] if addresses else '127.0.0.1'
