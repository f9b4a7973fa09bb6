"""Swarm facade: lifecycle, events, election and messaging surface.
"""
import logging
import threading
from collections import defaultdict
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from enum import Enum

from nodeswarm.config import SwarmConfig
from nodeswarm.errors import SwarmError
from nodeswarm.membership import MembershipProvider, Node, Reconciler
from nodeswarm.membership import terminate_process
from nodeswarm.providers import create_provider
from nodeswarm.tasks import Scheduler
from nodeswarm.transport import HttpTransport

logger = logging.getLogger(__name__)

__all__ = ['Swarm', 'SwarmEvent', 'EventBus', 'elect_master']


# ============================================================
# EVENT SYSTEM
# ============================================================

class SwarmEvent(Enum):
    READY = 'ready'
    ERROR = 'error'
    NODE_ADDED = 'node_added'
    NODE_REMOVED = 'node_removed'


class EventBus:
    """Thread-safe publish/subscribe for swarm events.

    Subscribers are called in subscription order. A failing subscriber is
    logged and does not prevent the others from running.
    """

    def __init__(self):
        self._subscribers = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event: SwarmEvent, callback: Callable) -> None:
        with self._lock:
            self._subscribers[event].append(callback)

    def subscribers(self, event: SwarmEvent) -> list[Callable]:
        with self._lock:
            return list(self._subscribers.get(event, ()))

    def publish(self, event: SwarmEvent, data=None) -> int:
        """Invoke every subscriber of event with data.

        Returns
            Number of subscribers invoked
        """
        callbacks = self.subscribers(event)
        for callback in callbacks:
            try:
                callback(data)
            except Exception as e:
                logger.error(f'Subscriber for {event.value} failed: {e}', exc_info=True)
        return len(callbacks)


# ============================================================
# ELECTION
# ============================================================

def elect_master(node_ids: Iterable[str]) -> str | None:
    """Elect the lexicographically smallest node id.

    Not a consensus protocol: disjoint partitions each elect their own master.
    """
    return min(node_ids, default=None)


# ============================================================
# SWARM
# ============================================================

class Swarm:
    """A member of the cluster.

    Owns the membership reconciler, the task scheduler and the transport and
    wires them together. Use as a context manager or call start()/stop().
    """

    def __init__(
        self,
        config: SwarmConfig = None,
        provider: MembershipProvider = None,
        transport: HttpTransport = None,
        on_ready: Callable = None,
        on_error: Callable = None,
        on_node_added: Callable = None,
        on_node_removed: Callable = None,
        on_fatal: Callable = None,
    ):
        """Initialize swarm member.

        Args:
            config: Swarm configuration (defaults to SwarmConfig())
            provider: Membership provider (defaults to create_provider(config))
            transport: Message transport (defaults to an HttpTransport on config.host:config.port)
            on_ready: Callback(nodes: dict) fired once membership is first known
            on_error: Callback(error: Exception) for errors without a caller
            on_node_added: Callback(node: Node)
            on_node_removed: Callback(node: Node)
            on_fatal: Callback() invoked when this node is removed from the
                membership (default signals SIGTERM to the process)
        """
        self.config = config or SwarmConfig()
        self.node_id = self.config.node_id
        self.events = EventBus()
        for event, handler in (
            (SwarmEvent.READY, on_ready),
            (SwarmEvent.ERROR, on_error),
            (SwarmEvent.NODE_ADDED, on_node_added),
            (SwarmEvent.NODE_REMOVED, on_node_removed),
        ):
            if handler is not None:
                self.events.subscribe(event, handler)

        self.provider = provider or create_provider(self.config)
        self.messages = transport or HttpTransport(
            host=self.config.host,
            port=self.config.port,
            request_timeout=self.config.request_timeout_sec,
            max_processing_time=self.config.max_processing_time_sec,
        )
        self.membership = Reconciler(
            self.node_id,
            self.provider,
            refresh_interval=self.config.refresh_interval_sec,
            retry_base_delay=self.config.retry_base_delay_sec,
            retry_max_delay=self.config.retry_max_delay_sec,
            on_ready=self._on_ready,
            on_node_added=self._on_node_added,
            on_node_removed=self._on_node_removed,
            on_error=self._report_error,
            on_self_removed=self._on_self_removed,
        )
        self.tasks = Scheduler(
            self.node_id,
            self.membership,
            self.messages,
            defaults=self.config.task_defaults,
            max_workers=self.config.max_workers,
            is_me=self.is_me,
        )
        self._on_fatal = on_fatal or terminate_process
        self._master = None
        self._master_lock = threading.Lock()
        self._started = False

    def __repr__(self) -> str:
        return f'Swarm(node_id={self.node_id!r}, nodes={len(self.membership.nodes)}, master={self._master!r})'

    def on(self, event: SwarmEvent | str, handler: Callable) -> None:
        """Subscribe handler to a swarm event.

        event is a SwarmEvent or its value: 'ready', 'error', 'node_added', 'node_removed'.
        """
        self.events.subscribe(SwarmEvent(event), handler)

    # lifecycle

    def start(self) -> 'Swarm':
        """Serve messages and start the membership loop.

        The provider is started by the membership loop, so an unavailable
        provider is reported on the error event and retried instead of
        failing here.
        """
        if self._started:
            return self
        logger.info(f'Starting {self.node_id}')
        self.messages.start()
        try:
            self.membership.start()
        except Exception:
            self.messages.stop()
            raise
        self._started = True
        return self

    def wait_ready(self, timeout: float = None) -> bool:
        return self.membership.wait_ready(timeout=timeout)

    def stop(self) -> None:
        if not self._started:
            return
        logger.info(f'Stopping {self.node_id}')
        self.membership.stop()
        self.tasks.shutdown()
        self.messages.stop()
        self.provider.close()
        self._started = False

    def __enter__(self):
        """Start and wait up to wait_on_enter_sec for the membership.
        """
        self.start()
        if not self.wait_ready(timeout=self.config.wait_on_enter_sec):
            logger.warning(f'Membership not ready after {self.config.wait_on_enter_sec}s, continuing')
        return self

    def __exit__(self, exc_ty, exc_val, tb):
        if exc_ty:
            logger.error(exc_val)
        self.stop()

    # membership

    @property
    def nodes(self) -> dict[str, Node]:
        return self.membership.nodes

    @property
    def master(self) -> str | None:
        return self._master

    @property
    def am_i_master(self) -> bool:
        master = self._master
        return master is not None and self.is_me(master)

    def is_me(self, node: str | Node) -> bool:
        node_id = node.id if isinstance(node, Node) else node
        return node_id == self.node_id

    def _on_ready(self, nodes: dict) -> None:
        with self._master_lock:
            self._master = elect_master(nodes)
        logger.info(f'Ready with {len(nodes)} nodes, master is {self._master}')
        self.events.publish(SwarmEvent.READY, nodes)

    def _on_node_added(self, node: Node) -> None:
        logger.info(f'Node {node.id} has been added')
        self.events.publish(SwarmEvent.NODE_ADDED, node)

    def _on_node_removed(self, node: Node) -> None:
        logger.info(f'Node {node.id} has been removed')
        with self._master_lock:
            if node.id == self._master:
                self._master = elect_master(self.membership.nodes)
                logger.info(f'Master {node.id} removed, new master is {self._master}')
        self.events.publish(SwarmEvent.NODE_REMOVED, node)

    def _on_self_removed(self, node: Node) -> None:
        self._report_error(SwarmError(f'Local node {node.id} was removed from the cluster'))
        self._on_fatal()

    def _report_error(self, error: Exception) -> None:
        if not self.events.publish(SwarmEvent.ERROR, error):
            logger.error(f'Swarm error: {error}')

    # tasks

    def register(self, name, handler: Callable = None, **options):
        return self.tasks.register(name, handler, **options)

    def exec(self, name: str, *args):
        return self.tasks.exec(name, *args)

    def submit(self, name: str, *args):
        return self.tasks.submit(name, *args)

    # messaging

    def send(self, node: str | Node, topic: str | list[str], message=None):
        """Send message to topic on node and return its response.

        Raises
            ValueError: If node is missing
            TransportError: If the round trip fails
        """
        if not node:
            error = ValueError('send Error: Missing node')
            self._report_error(error)
            raise error
        return self.messages.send(node, topic, message)

    def broadcast(self, topic: str | list[str], message=None) -> dict:
        """Send message to topic on every known node, in parallel.

        Returns
            Dictionary of node id -> response, or the exception raised for that node
        """
        node_ids = list(self.membership.nodes)
        if not node_ids:
            return {}
        results = {}
        with ThreadPoolExecutor(max_workers=min(len(node_ids), 32), thread_name_prefix='nodeswarm-broadcast') as pool:
            futures = {node_id: pool.submit(self.messages.send, node_id, topic, message) for node_id in node_ids}
            for node_id, future in futures.items():
                try:
                    results[node_id] = future.result()
                except Exception as e:
                    logger.warning(f'Broadcast to {node_id} failed: {e}')
                    results[node_id] = e
        return results
