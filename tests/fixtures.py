"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Scriptable membership providers
- In-process transport connecting several schedulers or swarms
- Wait helpers used by timing-sensitive tests
"""
import json
import logging
import queue
import threading
import time
from collections import defaultdict

from nodeswarm.config import SwarmConfig, TaskOptions
from nodeswarm.errors import ProviderError, TransportError
from nodeswarm.membership import EventKind, MembershipEvent
from nodeswarm.membership import MembershipProvider, Node, Subscription
from nodeswarm.ring import HashRing
from nodeswarm.tasks import Scheduler

logger = logging.getLogger(__name__)


# ============================================================================
# WAIT HELPERS
# ============================================================================

def wait_for(predicate, timeout_sec: float = 5, interval: float = 0.01) -> bool:
    """Poll predicate until it returns truthy or timeout expires.
    """
    deadline = time.time() + timeout_sec
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def nodes(*node_ids: str) -> dict[str, Node]:
    return {node_id: Node(node_id) for node_id in node_ids}


# ============================================================================
# PROVIDERS
# ============================================================================

class ScriptedProvider(MembershipProvider):
    """Provider whose snapshots and watch events are driven by the test.

    Args:
        node_ids: Initial node set
        watchable: If True, watch() returns a subscription fed by push()
    """

    def __init__(self, *node_ids: str, watchable: bool = False):
        self.node_ids = list(node_ids)
        self.watchable = watchable
        self.failures = []
        self.snapshot_calls = 0
        self.watch_cursors = []
        self.started = False
        self.closed = False
        self._events = None
        self._lock = threading.Lock()
        self.snapshot_gate = None

    def start(self) -> None:
        self.started = True

    def set_nodes(self, *node_ids: str) -> None:
        with self._lock:
            self.node_ids = list(node_ids)

    def fail_next(self, *errors: Exception) -> None:
        """Make the next snapshots raise the given errors, in order.
        """
        with self._lock:
            self.failures.extend(errors)

    def snapshot(self) -> dict[str, Node]:
        if self.snapshot_gate is not None:
            self.snapshot_gate.wait(timeout=5)
        with self._lock:
            self.snapshot_calls += 1
            if self.failures:
                raise self.failures.pop(0)
            return nodes(*self.node_ids)

    def watch(self, cursor: str = None) -> Subscription | None:
        if not self.watchable:
            return None
        self.watch_cursors.append(cursor)
        events = queue.Queue()
        self._events = events

        def stream():
            while True:
                event = events.get()
                if event is None:
                    return
                if event.cursor:
                    self.cursor = event.cursor
                yield event

        return Subscription(stream(), close=lambda: events.put(None))

    def push(self, kind: EventKind, node_id: str = None, error: Exception = None, cursor: str = None) -> None:
        """Deliver one event to the active watch subscription.
        """
        assert wait_for(lambda: self._events is not None), 'No active watch'
        node = Node(node_id) if node_id else None
        self._events.put(MembershipEvent(kind, node=node, error=error, cursor=cursor))

    def end_watch(self) -> None:
        events, self._events = self._events, None
        if events is not None:
            events.put(None)

    def has_watch(self) -> bool:
        return self._events is not None

    def close(self) -> None:
        self.closed = True
        self.end_watch()


class FlakyProvider(ScriptedProvider):
    """Provider failing every snapshot until healed.
    """

    def __init__(self, *node_ids: str):
        super().__init__(*node_ids)
        self.broken = True

    def snapshot(self) -> dict[str, Node]:
        if self.broken:
            with self._lock:
                self.snapshot_calls += 1
            raise ProviderError('provider unavailable')
        return super().snapshot()


# ============================================================================
# MEMBERSHIP AND TRANSPORT STAND-INS
# ============================================================================

class StaticMembership:
    """Fixed membership exposing the ensure_ring() the scheduler needs.
    """

    def __init__(self, *node_ids: str):
        self.ring = HashRing(node_ids)

    def ensure_ring(self) -> HashRing:
        return self.ring


class LoopbackHub:
    """Routes messages between LoopbackTransports in the same process.
    """

    def __init__(self):
        self.transports = {}
        self.sent = []

    def transport(self, node_id: str) -> 'LoopbackTransport':
        transport = LoopbackTransport(self, node_id)
        self.transports[node_id] = transport
        return transport


class LoopbackTransport:
    """Transport delivering messages by direct call, with JSON round trips.
    """

    def __init__(self, hub: LoopbackHub, node_id: str):
        self.hub = hub
        self.node_id = node_id
        self._handlers = defaultdict(list)
        self.started = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.started = False

    def on(self, topic, handler) -> None:
        if isinstance(topic, (list, tuple)):
            for t in topic:
                self.on(t, handler)
            return
        self._handlers[topic].append(handler)

    def send(self, node, topic, message=None):
        node_id = getattr(node, 'id', node)
        self.hub.sent.append((self.node_id, node_id, topic, message))
        target = self.hub.transports.get(node_id)
        if target is None:
            raise TransportError(f'Send to {node_id}/{topic} failed: unreachable', node_id, topic)
        topics = topic if isinstance(topic, list) else topic.split('/')
        body = message if isinstance(message, str) else json.loads(json.dumps(message))
        results = []
        for t in topics:
            for handler in target._handlers.get(t, ()):
                try:
                    results.append(handler(body, topics, self.node_id))
                except Exception as e:
                    status = getattr(e, 'status_code', 500)
                    raise TransportError(f'{node_id}/{topic} answered {status}: {e}', node_id, topic, status) from e
        result = results[0] if len(results) == 1 else (results or None)
        return json.loads(json.dumps(result))


# ============================================================================
# BUILDERS
# ============================================================================

def make_scheduler(node_id: str = 'node1', members=('node1',), transport=None, **defaults) -> Scheduler:
    """Create a Scheduler over a fixed membership.
    """
    return Scheduler(node_id, StaticMembership(*members), transport,
                     defaults=TaskOptions(**defaults) if defaults else None, max_workers=16)


def make_config(**overrides) -> SwarmConfig:
    """Create SwarmConfig with test-optimized values.
    """
    defaults = {
        'node_id': 'node1',
        'host': '127.0.0.1',
        'port': 0,
        'provider': 'standalone',
        'refresh_interval_sec': 0.1,
        'retry_base_delay_sec': 0.05,
        'retry_max_delay_sec': 0.2,
        'request_timeout_sec': 5,
        'wait_on_enter_sec': 5,
        'max_workers': 8,
    }
    defaults.update(overrides)
    return SwarmConfig(**defaults)
