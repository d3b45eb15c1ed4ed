# runner/fanout.py
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, TypeVar

from .errors import ErrorCategory, ExecutionError, TERMINAL_CATEGORIES, classify
from .logger import log

T = TypeVar("T")


def fan_out(task: Callable[[int], T], count: int, label: str, max_workers: Optional[int] = None) -> List[T]:
    """
    Runs `task(i)` for i in range(count) on worker threads and returns the successful results
    in submission order.

    Individual failures are logged and dropped. Terminal execution errors (budget, user
    termination) always propagate. If nothing succeeded the first error is raised, wrapped as
    TRANSIENT when it was not classified already.
    """
    if count <= 0:
        return []
    results: List[T] = []
    errors: List[Exception] = []
    with ThreadPoolExecutor(max_workers=max_workers or count, thread_name_prefix=label) as pool:
        futures = [pool.submit(task, i) for i in range(count)]
        for index, future in enumerate(futures):
            try:
                results.append(future.result())
            except Exception as e:
                if classify(e) in TERMINAL_CATEGORIES:
                    for pending in futures:
                        pending.cancel()
                    raise
                log("WARN", f"{label}_worker_failed", f"{label} worker {index} failed", error=str(e))
                errors.append(e)
    if not results and errors:
        first = errors[0]
        if isinstance(first, ExecutionError):
            raise first
        raise ExecutionError(f"All {count} {label} workers failed: {first}", ErrorCategory.TRANSIENT) from first
    return results
