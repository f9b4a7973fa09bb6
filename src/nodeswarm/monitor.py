"""Background monitor threads and retry helpers.
"""
import functools
import logging
import threading
import time

logger = logging.getLogger(__name__)

__all__ = ['Monitor', 'retry_with_backoff', 'backoff_delay']


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential delay for the given 1-based attempt, capped at max_delay.
    """
    return min(base_delay * (2 ** (max(attempt, 1) - 1)), max_delay)


def retry_with_backoff(max_attempts: int = 5, base_delay: float = 1.0, operation_name: str = None,
                       exceptions: tuple = (Exception,)):
    """Decorator to retry function with exponential backoff.

    Args:
        max_attempts: Maximum retry attempts
        base_delay: Base delay in seconds (doubles each retry)
        operation_name: Name for logging (defaults to function name)
        exceptions: Exception types that trigger a retry

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(f'{name} failed after {max_attempts} attempts: {e}')
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(f'{name} attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay:.1f}s')
                    time.sleep(delay)
        return wrapper
    return decorator


class Monitor:
    """Base class for background monitoring threads.
    """

    def __init__(self, name: str, interval: float, shutdown_event: threading.Event):
        """Initialize monitor.

        Args:
            name: Monitor name
            interval: Check interval in seconds
            shutdown_event: Event to signal shutdown
        """
        self.name = name
        self.interval = interval
        self.shutdown_event = shutdown_event
        self.thread = None

    def start(self) -> None:
        """Start the monitor thread.
        """
        self.thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=self.name
        )
        self.thread.start()
        logger.info(f'{self.name} monitor started')

    def join(self, timeout: float = 10) -> None:
        if self.thread and self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f'{self.name} thread did not stop within timeout')

    def _run(self) -> None:
        """Main monitoring loop.
        """
        while not self.shutdown_event.is_set():
            try:
                self.check()
            except Exception as e:
                logger.error(f'{self.name} monitor error: {e}', exc_info=True)
                if self.shutdown_event.wait(timeout=1.0):
                    break
                continue

            if self.shutdown_event.wait(timeout=self.interval):
                break

    def check(self) -> None:
        """Perform monitoring check - to be implemented by subclasses.
        """
        raise NotImplementedError
