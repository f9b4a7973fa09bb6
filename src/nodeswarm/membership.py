"""Cluster membership: node model, provider interface and the reconciler.

The reconciler owns the membership set and the hash ring. It is the only
writer of both; the scheduler and the facade read copies.
"""
import logging
import os
import signal
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from nodeswarm.errors import ProviderError
from nodeswarm.monitor import Monitor, backoff_delay
from nodeswarm.ring import HashRing

logger = logging.getLogger(__name__)

__all__ = [
    'Node',
    'EventKind',
    'MembershipEvent',
    'Subscription',
    'MembershipProvider',
    'Reconciler',
    'terminate_process',
]


@dataclass(frozen=True)
class Node:
    """A cluster member. Identity is the id (its address).
    """
    id: str
    metadata: dict = field(default_factory=dict, compare=False, hash=False)

    def __str__(self) -> str:
        return self.id


class EventKind(Enum):
    ADDED = 'added'
    REMOVED = 'removed'
    ERROR = 'error'


@dataclass
class MembershipEvent:
    """One entry of a provider watch stream.
    """
    kind: EventKind
    node: Node = None
    error: Exception = None
    cursor: str = None


class Subscription:
    """Cancellable stream of membership events.

    Iteration is lazy. cancel() stops iteration and invokes the close
    callback, which tears down the underlying connection.
    """

    def __init__(self, events: Iterable[MembershipEvent], close: Callable[[], None] = None):
        self._events = events
        self._close = close
        self._cancelled = threading.Event()

    def __iter__(self):
        for event in self._events:
            if self._cancelled.is_set():
                break
            yield event

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        if self._close is not None:
            self._close()


class MembershipProvider:
    """Source of truth for the live node set.

    Subclasses implement snapshot(). Providers able to stream changes
    override watch() and keep cursor pointing at the last seen position.
    """
    cursor = None

    def start(self) -> None:
        """Prepare the provider before the first snapshot.
        """

    def snapshot(self) -> dict[str, Node]:
        """Return the current live nodes keyed by id.

        Raises
            ProviderError: If the source cannot be read
        """
        raise NotImplementedError

    def watch(self, cursor: str = None) -> Subscription | None:
        """Open an event stream resuming after cursor, or None if unsupported.
        """
        return None

    def close(self) -> None:
        """Release provider resources.
        """


def terminate_process() -> None:
    """Signal termination of the current process.
    """
    os.kill(os.getpid(), signal.SIGTERM)


class Reconciler(Monitor):
    """Keeps the membership set and the hash ring aligned with a provider.

    The loop thread starts the provider and performs an initial full diff,
    then either consumes the provider watch stream or repeats the full diff
    every interval. A watch stream that ends without events is reopened with
    backoff. Failures, provider startup included, keep the current
    membership, are reported through on_error and retried with backoff; they
    never end the loop.
    """

    def __init__(
        self,
        node_id: str,
        provider: MembershipProvider,
        refresh_interval: float = 10,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30,
        on_ready: Callable = None,
        on_node_added: Callable = None,
        on_node_removed: Callable = None,
        on_error: Callable = None,
        on_self_removed: Callable = None,
    ):
        """Initialize reconciler.

        Args:
            node_id: Id of the local node, used for self-removal detection
            provider: Membership provider
            refresh_interval: Seconds between full diffs when the provider cannot watch
            retry_base_delay: First retry delay after a failure (doubles per failure)
            retry_max_delay: Upper bound for the retry delay
            on_ready: Callback(nodes: dict) fired once on the first successful snapshot
            on_node_added: Callback(node: Node)
            on_node_removed: Callback(node: Node)
            on_error: Callback(error: Exception) for provider failures
            on_self_removed: Callback(node: Node) when the local node disappears
        """
        super().__init__(f'reconciler-{node_id}', refresh_interval, threading.Event())
        self.node_id = node_id
        self.provider = provider
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.on_ready = on_ready
        self.on_node_added = on_node_added
        self.on_node_removed = on_node_removed
        self.on_error = on_error
        self.on_self_removed = on_self_removed or (lambda node: terminate_process())

        self._nodes = {}
        self._ring = None
        self._lock = threading.RLock()
        self._inflight = threading.Lock()
        self._ready = threading.Event()
        self._announced = False
        self._subscription = None
        self._failures = 0
        self._provider_started = False

    @property
    def nodes(self) -> dict[str, Node]:
        """Copy of the current membership set.
        """
        with self._lock:
            return dict(self._nodes)

    @property
    def ring(self) -> HashRing | None:
        return self._ring

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def failures(self) -> int:
        """Consecutive failed attempts since the last success.
        """
        return self._failures

    def wait_ready(self, timeout: float = None) -> bool:
        """Block until the initial membership has been applied and announced.
        """
        return self._ready.wait(timeout=timeout)

    def ensure_ring(self) -> HashRing:
        """Return the ring, building it from the current membership if needed.
        """
        with self._lock:
            if self._ring is None:
                self._ring = HashRing(self._nodes)
                logger.info(f'Ring initialized with {len(self._ring)} nodes')
            return self._ring

    def reconcile(self) -> bool:
        """Fetch a snapshot and apply the full diff.

        Returns False without doing anything if another reconciliation is in
        flight.

        Raises
            ProviderError: If the snapshot cannot be fetched
        """
        if not self._inflight.acquire(blocking=False):
            logger.debug('Reconciliation already in flight, skipping')
            return False
        try:
            snapshot = self.provider.snapshot()
            self.apply_snapshot(snapshot)
        finally:
            self._inflight.release()
        return True

    def apply_snapshot(self, snapshot: dict[str, Node]) -> tuple[list[Node], list[Node]]:
        """Apply a full diff against snapshot.

        Additions are applied and notified before removals. Entries added in
        this pass are marked kept, so they are never removed by it.

        Returns
            Tuple of (added nodes, removed nodes)
        """
        with self._lock:
            keep = set()
            added = []
            for node_id, node in snapshot.items():
                if node_id not in self._nodes:
                    self._nodes[node_id] = node
                    added.append(node)
                keep.add(node_id)

            removed = [node for node_id, node in self._nodes.items() if node_id not in keep]
            for node in removed:
                del self._nodes[node.id]

            if self._ring is not None:
                for node in added:
                    self._ring.add(node.id)
                for node in removed:
                    self._ring.remove(node.id)

            first = not self._announced
            if first:
                self.ensure_ring()
                self._announced = True
            current = dict(self._nodes)

        if added or removed:
            logger.info(f'Membership diff: +{[n.id for n in added]} -{[n.id for n in removed]}')

        for node in added:
            self._notify(self.on_node_added, node)
        if first:
            logger.info(f'Membership ready with {len(current)} nodes')
            self._notify(self.on_ready, current)
            self._ready.set()
        for node in removed:
            self._notify(self.on_node_removed, node)
            self._check_self_removed(node)

        return added, removed

    def apply_event(self, event: MembershipEvent) -> bool:
        """Apply a single watch event.

        Returns
            True if the membership set changed

        Raises
            ProviderError: If the event carries an error
        """
        if event.kind == EventKind.ERROR:
            error = event.error or ProviderError('Watch stream reported an error')
            if not isinstance(error, ProviderError):
                error = ProviderError(str(error))
            raise error

        node = event.node
        with self._lock:
            if event.kind == EventKind.ADDED:
                if node.id in self._nodes:
                    return False
                self._nodes[node.id] = node
                if self._ring is not None:
                    self._ring.add(node.id)
            else:
                node = self._nodes.pop(node.id, None)
                if node is None:
                    return False
                if self._ring is not None:
                    self._ring.remove(node.id)

        if event.kind == EventKind.ADDED:
            logger.info(f'Node {node.id} added')
            self._notify(self.on_node_added, node)
        else:
            logger.info(f'Node {node.id} removed')
            self._notify(self.on_node_removed, node)
            self._check_self_removed(node)
        return True

    def consume(self, subscription: Subscription) -> int:
        """Apply events from subscription until it ends or is cancelled.

        Returns
            Number of events applied
        """
        self._subscription = subscription
        applied = 0
        try:
            for event in subscription:
                self.apply_event(event)
                applied += 1
                self._failures = 0
                if self.shutdown_event.is_set():
                    break
        finally:
            self._subscription = None
        return applied

    def stop(self, timeout: float = 10) -> None:
        """Stop the loop and tear down an active watch.
        """
        self.shutdown_event.set()
        subscription = self._subscription
        if subscription is not None:
            subscription.cancel()
        self.join(timeout=timeout)

    def _start_provider(self) -> None:
        if not self._provider_started:
            self.provider.start()
            self._provider_started = True
            logger.info(f'Membership provider {type(self.provider).__name__} started')

    def _run(self) -> None:
        need_snapshot = True
        while not self.shutdown_event.is_set():
            try:
                if need_snapshot:
                    self._start_provider()
                    if not self.reconcile():
                        if self.shutdown_event.wait(timeout=self.retry_base_delay):
                            break
                        continue
                    need_snapshot = False
                    self._failures = 0

                subscription = self.provider.watch(self.provider.cursor)
                if subscription is None:
                    if self.shutdown_event.wait(timeout=self.interval):
                        break
                    need_snapshot = True
                    continue

                if self.consume(subscription):
                    delay = self.retry_base_delay
                else:
                    # a stream closing without events counts as a failed attempt
                    self._failures += 1
                    delay = backoff_delay(self._failures, self.retry_base_delay, self.retry_max_delay)
                    logger.warning(f'Membership watch ended without events, reopening in {delay:.1f}s')
                if self.provider.cursor is None:
                    need_snapshot = True
                if self.shutdown_event.wait(timeout=delay):
                    break
            except Exception as e:
                if self.shutdown_event.is_set():
                    break
                self._failures += 1
                self._report(e)
                if getattr(e, 'resync', False):
                    logger.warning(f'Membership cursor expired, resyncing: {e}')
                    self.provider.cursor = None
                    need_snapshot = True
                    continue
                if self.provider.cursor is None:
                    need_snapshot = True
                delay = backoff_delay(self._failures, self.retry_base_delay, self.retry_max_delay)
                logger.warning(f'Membership attempt {self._failures} failed: {e}, retrying in {delay:.1f}s')
                if self.shutdown_event.wait(timeout=delay):
                    break

    def _check_self_removed(self, node: Node) -> None:
        if node.id != self.node_id:
            return
        logger.critical(f'Local node {self.node_id} was removed from the membership')
        self.shutdown_event.set()
        self.on_self_removed(node)

    def _report(self, error: Exception) -> None:
        if self.on_error is None:
            logger.error(f'Membership error: {error}')
            return
        self._notify(self.on_error, error)

    def _notify(self, callback: Callable, payload) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            logger.error(f'Membership callback {getattr(callback, "__name__", callback)} failed: {e}', exc_info=True)
