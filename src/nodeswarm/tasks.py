"""Task registry and scheduler.

exec() resolves the owner of a routing key on the hash ring and either runs
the task locally or dispatches it to the owner over the transport. Local
execution of a serialized task goes through a per-task queue:

    IDLE            nothing running, nothing pending
    RUNNING         an invocation is running
    RUNNING_QUEUED  an invocation is running and more are pending

Callers waiting on the same invocation share its outcome. Each caller has
its own timeout; expiry fails that caller only and never interrupts the
handler.
"""
import contextlib
import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from concurrent.futures import Future, InvalidStateError, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum

from nodeswarm.config import TaskOptions
from nodeswarm.errors import InvalidMessage, QueueFull, RingNotReady
from nodeswarm.errors import SwarmError, TaskAlreadyRegistered
from nodeswarm.errors import TaskDispatchError, TaskNotFound, TaskTimeout

logger = logging.getLogger(__name__)

__all__ = ['Scheduler', 'TaskDescriptor', 'Invocation', 'TaskQueueState', 'TASK_TOPIC', 'NEXT_BATCH']

TASK_TOPIC = '_task'
NEXT_BATCH = 'N'


class TaskQueueState(Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    RUNNING_QUEUED = 'running_queued'


@dataclass
class Invocation:
    """One handler execution and the callers waiting on it.
    """
    args: tuple
    waiters: list[Future] = field(default_factory=list)


class TaskDescriptor:
    """A registered task and, when serialized, its execution queue.
    """

    def __init__(self, name: str, handler: Callable, options: TaskOptions):
        self.name = name
        self.handler = handler
        self.timeout = options.timeout
        self.serialized = options.serialized
        self.single_trigger = options.single_trigger
        self.max_queue_length = options.max_queue_length
        self.current = None
        self.pending = deque()
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return (f'TaskDescriptor(name={self.name!r}, serialized={self.serialized}, '
                f'single_trigger={self.single_trigger!r}, max_queue_length={self.max_queue_length}, '
                f'timeout={self.timeout})')

    @property
    def state(self) -> TaskQueueState:
        with self.lock:
            if self.current is None:
                return TaskQueueState.IDLE
            if self.pending:
                return TaskQueueState.RUNNING_QUEUED
            return TaskQueueState.RUNNING


class Deadlines:
    """Single daemon thread expiring waiters whose timeout has elapsed.

    Entries are kept in a heap ordered by deadline; a waiter completed before
    its deadline is dropped when it reaches the top.
    """

    def __init__(self, name: str):
        self.name = name
        self._heap = []
        self._sequence = itertools.count()
        self._condition = threading.Condition()
        self._closed = False
        self._thread = None

    def __len__(self) -> int:
        with self._condition:
            return len(self._heap)

    def add(self, delay: float, waiter: Future, on_expire: Callable[[Future], None]) -> None:
        deadline = time.monotonic() + delay
        with self._condition:
            if self._closed:
                return
            heapq.heappush(self._heap, (deadline, next(self._sequence), waiter, on_expire))
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
                self._thread.start()
            self._condition.notify()

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._heap.clear()
            self._condition.notify()

    def _next_expired(self):
        with self._condition:
            while not self._closed:
                while self._heap and self._heap[0][2].done():
                    heapq.heappop(self._heap)
                if not self._heap:
                    self._condition.wait()
                    continue
                remaining = self._heap[0][0] - time.monotonic()
                if remaining <= 0:
                    _, _, waiter, on_expire = heapq.heappop(self._heap)
                    return waiter, on_expire
                self._condition.wait(timeout=remaining)
            return None

    def _run(self) -> None:
        while True:
            entry = self._next_expired()
            if entry is None:
                return
            waiter, on_expire = entry
            try:
                on_expire(waiter)
            except Exception as e:
                logger.error(f'{self.name} expiry callback failed: {e}', exc_info=True)


def _settle(future: Future, result=None, error: Exception = None) -> None:
    """Resolve future unless a timeout already did.
    """
    with contextlib.suppress(InvalidStateError):
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)


def _failed(error: Exception) -> Future:
    future = Future()
    future.set_exception(error)
    return future


class Scheduler:
    """Registers tasks and executes them on the node the ring assigns.
    """

    def __init__(
        self,
        node_id: str,
        membership,
        transport=None,
        defaults: TaskOptions = None,
        max_workers: int = 32,
        is_me: Callable[[str], bool] = None,
    ):
        """Initialize scheduler.

        Args:
            node_id: Id of the local node
            membership: Reconciler providing ensure_ring()
            transport: Transport used for remote dispatch (None runs everything locally)
            defaults: Default TaskOptions for registrations
            max_workers: Size of the handler worker pool
            is_me: Callback(node_id) -> bool deciding whether an owner is local
        """
        self.node_id = node_id
        self.membership = membership
        self.transport = transport
        self.defaults = defaults or TaskOptions()
        self._is_me = is_me or (lambda owner: owner == self.node_id)
        self._tasks = {}
        self._registry_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='nodeswarm-task')
        self._dispatcher = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='nodeswarm-dispatch')
        self._deadlines = Deadlines(f'nodeswarm-deadlines-{node_id}')
        self._closed = False

        if transport is not None:
            transport.on(TASK_TOPIC, self._on_task_message)

    @property
    def tasks(self) -> list[str]:
        with self._registry_lock:
            return list(self._tasks)

    def get(self, name: str) -> TaskDescriptor | None:
        return self._tasks.get(name)

    def queue_state(self, name: str) -> TaskQueueState:
        task = self._tasks.get(name)
        if task is None:
            raise TaskNotFound(name)
        return task.state

    def register(self, name, handler: Callable = None, **options):
        """Register one task or a mapping of tasks.

        A single registration raises on failure. A mapping of name to handler,
        or name to a dict with a 'handler' key and per-task options, registers
        every entry it can and reports the rest.

        Args:
            name: Task name or mapping of task names to handlers/option dicts
            handler: Task handler when registering a single task
            **options: TaskOptions fields (timeout, serialized, single_trigger, max_queue_length)

        Returns
            The TaskDescriptor for a single registration, or a dict of
            task name -> exception for the mapping entries that failed

        Raises
            TaskAlreadyRegistered: If the name is already registered
            TypeError: If the handler is not callable or an option is unknown
        """
        if isinstance(name, Mapping):
            failures = {}
            for task_name, entry in name.items():
                entry_options = dict(options)
                if isinstance(entry, Mapping):
                    entry = dict(entry)
                    task_handler = entry.pop('handler', None)
                    entry_options.update(entry)
                else:
                    task_handler = entry
                try:
                    self._register_one(task_name, task_handler, entry_options)
                except (SwarmError, TypeError) as e:
                    logger.error(f'Unable to register task {task_name}: {e}')
                    failures[task_name] = e
            return failures

        if not isinstance(name, str):
            raise TypeError(f'Unable to register task {name!r}, wrong arguments')
        return self._register_one(name, handler, options)

    def _register_one(self, name: str, handler: Callable, options: dict) -> TaskDescriptor:
        if not callable(handler):
            raise TypeError(f'Unable to register task {name}, handler is not callable')
        task = TaskDescriptor(name, handler, replace(self.defaults, **options))
        with self._registry_lock:
            if name in self._tasks:
                raise TaskAlreadyRegistered(name)
            self._tasks[name] = task
        logger.debug(f'Registered {task!r}')
        return task

    def exec(self, name: str, *args):
        """Execute a task on its owning node and wait for the result.

        The first argument doubles as routing key; without arguments the task
        name is the routing key.
        """
        return self.submit(name, *args).result()

    def submit(self, name: str, *args) -> Future:
        """Execute a task on its owning node.

        Returns
            Future resolving to the handler result. Routing, capacity and
            timeout errors fail the future; a QueueFull future is already
            failed when returned.
        """
        if self._closed:
            return _failed(self._closed_error())
        if name not in self._tasks:
            return _failed(TaskNotFound(name))

        ring = self.membership.ensure_ring()
        if not len(ring):
            return _failed(RingNotReady())

        key = args[0] if args and args[0] is not None else name
        owner = ring.get(key)
        if owner is None or self._is_me(owner):
            return self.run_local(name, args)
        return self._dispatch(owner, name, args)

    def _dispatch(self, node_id: str, name: str, args: tuple) -> Future:
        if self.transport is None:
            return _failed(TaskDispatchError(name, node_id, SwarmError('No transport configured')))
        logger.debug(f'Dispatching task {name} to {node_id}')
        try:
            return self._dispatcher.submit(self._send_task, node_id, name, args)
        except RuntimeError:
            return _failed(self._closed_error())

    def _send_task(self, node_id: str, name: str, args: tuple):
        try:
            return self.transport.send(node_id, TASK_TOPIC, {'task': name, 'args': list(args)})
        except Exception as e:
            logger.warning(f'Dispatch of task {name} to {node_id} failed: {e}')
            raise TaskDispatchError(name, node_id, e) from e

    def _on_task_message(self, message, topics=None, sender=None):
        """Run a task dispatched by another node, always locally.
        """
        if not isinstance(message, Mapping) or not message.get('task'):
            raise InvalidMessage('Missing task property')
        logger.debug(f'Task {message["task"]} received from {sender}')
        return self.run_local(message['task'], tuple(message.get('args') or ())).result()

    def run_local(self, name: str, args: tuple = ()) -> Future:
        """Execute a task on this node through its queue.
        """
        if self._closed:
            return _failed(self._closed_error())
        task = self._tasks.get(name)
        if task is None:
            return _failed(TaskNotFound(name))
        args = tuple(args)

        if not task.serialized:
            return self._run_parallel(task, args)

        waiter = Future()
        start = None
        rejected = None
        with task.lock:
            if task.current is None and not task.pending:
                start = task.current = Invocation(args, [waiter])
            elif task.current is not None and task.single_trigger and task.single_trigger != NEXT_BATCH:
                task.current.waiters.append(waiter)
            elif task.single_trigger and task.pending:
                task.pending[0].waiters.append(waiter)
            elif len(task.pending) >= task.max_queue_length:
                rejected = QueueFull(name, task.max_queue_length)
            else:
                task.pending.append(Invocation(args, [waiter]))

        if rejected is not None:
            logger.warning(str(rejected))
            waiter.set_exception(rejected)
            return waiter

        self._arm_timeout(task, waiter)
        if start is not None:
            try:
                self._executor.submit(self._drain, task, start)
            except RuntimeError:
                self._abandon(task, self._closed_error())
        return waiter

    def _run_parallel(self, task: TaskDescriptor, args: tuple) -> Future:
        waiter = Future()
        self._arm_timeout(task, waiter)

        def run():
            logger.debug(f'Executing concurrent task {task.name}')
            result, error = self._invoke(task, args)
            _settle(waiter, result, error)

        try:
            self._executor.submit(run)
        except RuntimeError:
            _settle(waiter, error=self._closed_error())
        return waiter

    def _drain(self, task: TaskDescriptor, invocation: Invocation) -> None:
        """Run invocation, then every pending one in order until the queue is empty.
        """
        while invocation is not None:
            logger.info(f'Executing task {task.name} (queue={len(task.pending)})')
            result, error = self._invoke(task, invocation.args)
            with task.lock:
                waiters = list(invocation.waiters)
                invocation = task.pending.popleft() if task.pending else None
                task.current = invocation
            for waiter in waiters:
                _settle(waiter, result, error)

    def _invoke(self, task: TaskDescriptor, args: tuple) -> tuple:
        start = time.time()
        try:
            result = task.handler(*args)
        except Exception as e:
            logger.info(f'Executing task {task.name} failed with {e}')
            return None, e
        logger.info(f'Executing task {task.name} succeeded in {int((time.time() - start) * 1000)}ms')
        return result, None

    def _arm_timeout(self, task: TaskDescriptor, waiter: Future) -> None:
        if not task.timeout:
            return
        self._deadlines.add(task.timeout, waiter, lambda expired: self._expire(task, expired))

    def _expire(self, task: TaskDescriptor, waiter: Future) -> None:
        if waiter.done():
            return
        logger.warning(f'Task {task.name} timed out after {task.timeout}s for one caller')
        _settle(waiter, error=TaskTimeout(task.name, task.timeout))

    def _closed_error(self) -> SwarmError:
        return SwarmError(f'Scheduler on {self.node_id} is shut down')

    def _abandon(self, task: TaskDescriptor, error: Exception) -> None:
        """Fail every waiter of task and reset its queue to IDLE.
        """
        with task.lock:
            invocations = ([task.current] if task.current else []) + list(task.pending)
            task.current = None
            task.pending.clear()
        for invocation in invocations:
            for waiter in invocation.waiters:
                _settle(waiter, error=error)

    def shutdown(self, wait: bool = False) -> None:
        """Release the worker pools and fail every caller still waiting.
        """
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)
        self._dispatcher.shutdown(wait=wait, cancel_futures=True)
        error = self._closed_error()
        with self._registry_lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            self._abandon(task, error)
        self._deadlines.close()
