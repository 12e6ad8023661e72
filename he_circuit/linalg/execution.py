"""
Tile Task Execution

Linear algebra operations split into independent per-tile (or per-row)
tasks. TileExecutor runs a batch of such tasks either in order on the
calling thread or on a thread pool, and always returns results in task
order.

The PARALLEL pool is created on first use and reused by every later batch,
so the set of worker threads stays bounded by max_workers. A batch runs to
completion: every task is submitted, all of them are waited for, and only
then is the first failure (in task order) re-raised. There is no
cancellation and no timeout.

Usage:
    executor = TileExecutor(ExecutionPolicy.PARALLEL, max_workers=8)
    results = executor.map(lambda j: process_column(j), range(num_cols))
    executor.shutdown()
"""

from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Iterable, List, Optional, TypeVar
import logging
import threading

from ..config import ExecutionPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class TileExecutor:
    """Dispatches independent tile tasks according to an ExecutionPolicy."""

    def __init__(
        self,
        policy: ExecutionPolicy = ExecutionPolicy.SEQUENTIAL,
        max_workers: Optional[int] = None,
    ):
        """
        Args:
            policy: SEQUENTIAL or PARALLEL
            max_workers: Thread pool size for PARALLEL (None lets
                ThreadPoolExecutor choose)
        """
        if max_workers is not None and max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {max_workers}")
        self.policy = policy
        self.max_workers = max_workers
        self._pool: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="he-tile",
                )
            return self._pool

    def map(self, func: Callable[[T], R], items: Iterable[T]) -> List[R]:
        """
        Apply `func` to every item.

        Must not be called from one of this executor's own tasks.

        Returns:
            Results in the order of `items`

        Raises:
            Whatever the first failing task raised
        """
        items = list(items)
        if self.policy == ExecutionPolicy.SEQUENTIAL or len(items) <= 1:
            return [func(item) for item in items]

        logger.debug(f"Dispatching {len(items)} tile tasks to a thread pool")
        pool = self._get_pool()
        futures = [pool.submit(func, item) for item in items]
        wait(futures)
        return [future.result() for future in futures]

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the thread pool; a later map() starts a new one."""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)
            logger.debug("Tile thread pool shut down")

    def __repr__(self) -> str:
        return f"TileExecutor(policy={self.policy.value}, max_workers={self.max_workers})"
