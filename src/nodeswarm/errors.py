"""Exception hierarchy shared by the scheduler, reconciler and transport.
"""

__all__ = [
    'SwarmError',
    'TaskNotFound',
    'TaskAlreadyRegistered',
    'RingNotReady',
    'QueueFull',
    'TaskTimeout',
    'TaskDispatchError',
    'TransportError',
    'ProviderError',
    'InvalidMessage',
]


class SwarmError(Exception):
    """Base class for all nodeswarm errors.

    status_code is the HTTP status the transport answers with when the error
    escapes a message handler.
    """
    status_code = 500


class TaskNotFound(SwarmError):
    """Raised when executing a task name that was never registered.
    """
    status_code = 404

    def __init__(self, name: str):
        super().__init__(f'No such task {name}')
        self.name = name


class TaskAlreadyRegistered(SwarmError):
    """Raised when registering a task name twice.
    """
    status_code = 409

    def __init__(self, name: str):
        super().__init__(f'Unable to register task {name}, already registered')
        self.name = name


class RingNotReady(SwarmError):
    status_code = 503

    def __init__(self):
        super().__init__('Ring not ready')


class QueueFull(SwarmError):
    """Raised when a serialized task already holds max_queue_length pending invocations.
    """
    status_code = 429

    def __init__(self, name: str, max_queue_length: int):
        super().__init__(f'Max execution queue size reached for task {name} ({max_queue_length})')
        self.name = name
        self.max_queue_length = max_queue_length


class TaskTimeout(SwarmError, TimeoutError):
    """Raised to a single caller whose wait outlived the task timeout.

    The handler itself is not interrupted.
    """
    status_code = 504

    def __init__(self, name: str, timeout: float):
        super().__init__(f'Task {name} timed out after {timeout}s')
        self.name = name
        self.timeout = timeout


class TransportError(SwarmError):
    """Raised when a message round trip fails or returns a non-success status.
    """
    status_code = 502

    def __init__(self, message: str, node: str = None, topic: str = None, status: int = None):
        super().__init__(message)
        self.node = node
        self.topic = topic
        self.status = status


class TaskDispatchError(SwarmError):
    """Raised when dispatching a task to its owning node fails.
    """
    status_code = 502

    def __init__(self, task: str, node: str, cause: Exception):
        super().__init__(f'Dispatch of task {task} to {node} failed: {cause}')
        self.task = task
        self.node = node
        self.cause = cause


class ProviderError(SwarmError):
    """Raised by membership providers on fetch or watch failure.

    resync=True means the provider cursor is no longer usable and the next
    attempt must start from a fresh snapshot without waiting.
    """
    status_code = 503

    def __init__(self, message: str, resync: bool = False):
        super().__init__(message)
        self.resync = resync


class InvalidMessage(SwarmError, ValueError):
    """Raised when an inbound message cannot be interpreted.
    """
    status_code = 400
