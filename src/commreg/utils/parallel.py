"""
Parallel execution of independent tasks using joblib.

Results always come back in input order, whatever order the workers
finish in, so reductions over them do not depend on the worker count.
"""

import os
from typing import Callable, Optional, Sequence, TypeVar

from joblib import Parallel, delayed
from tqdm import tqdm

from commreg.logging import get_logger

logger = get_logger()

T = TypeVar("T")
R = TypeVar("R")


def get_n_workers(n_jobs: int = -1) -> int:
    """
    Resolve a requested worker count.

    The request is advisory and is capped at the host CPU count.

    Args:
        n_jobs: Requested workers; -1 means all but one CPU, other
            negative values count back from the CPU count as in joblib

    Returns:
        Number of workers, at least 1
    """
    n_cpus = os.cpu_count() or 1

    if n_jobs == -1:
        return max(1, n_cpus - 1)
    if n_jobs < 0:
        return max(1, n_cpus + 1 + n_jobs)
    if n_jobs > n_cpus:
        logger.debug(f"Requested {n_jobs} workers; capping at {n_cpus} CPUs")
    return max(1, min(n_jobs, n_cpus))


def _indexed_call(func: Callable[[T], R], index: int, item: T) -> tuple[int, R]:
    return index, func(item)


def parallel_map(
    func: Callable[[T], R],
    items: Sequence[T],
    n_jobs: int = -1,
    backend: str = "loky",
    desc: Optional[str] = None,
    show_progress: bool = True,
    batch_size: str | int = "auto",
) -> list[R]:
    """
    Apply ``func`` to every item, in parallel when worthwhile.

    Args:
        func: Picklable callable (for process backends)
        items: Items to process
        n_jobs: Requested workers (see :func:`get_n_workers`)
        backend: Joblib backend ('loky', 'threading', 'multiprocessing')
        desc: Progress bar label
        show_progress: Show a tqdm progress bar
        batch_size: Joblib batch size

    Returns:
        Results aligned with ``items``
    """
    n_items = len(items)
    if n_items == 0:
        return []

    n_workers = get_n_workers(n_jobs)
    progress = tqdm(total=n_items, desc=desc, disable=not (show_progress and desc))

    with progress:
        if n_items <= 2 or n_workers == 1:
            results = []
            for item in items:
                results.append(func(item))
                progress.update()
            return results

        logger.debug(f"Running {n_items} tasks with {n_workers} workers ({backend})")

        runner = Parallel(
            n_jobs=n_workers,
            backend=backend,
            batch_size=batch_size,
            return_as="generator_unordered",
        )
        tagged = []
        for index, result in runner(delayed(_indexed_call)(func, i, item) for i, item in enumerate(items)):
            tagged.append((index, result))
            progress.update()

    tagged.sort(key=lambda pair: pair[0])
    return [result for _, result in tagged]
