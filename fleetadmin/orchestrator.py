"""
Bounded Fan-out / Fan-in Orchestration
======================================

Every bulk operation (scan, refresh, firmware update, backup, restore, time
sync, camera configuration) runs through ``run_bounded``: the items are handed
to a worker pool created for that batch alone, each worker runs the per-item
operation, and the results are drained back into a list.

Features:
- Worker count is min(number of items, concurrency cap)
- A failing item produces a failure result instead of aborting the batch
- Exactly one result per input item, in completion order
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, List, TypeVar

logger = logging.getLogger(__name__)

Item = TypeVar("Item")
Result = TypeVar("Result")


def run_bounded(
    items: Iterable[Item],
    operation: Callable[[Item], Result],
    on_error: Callable[[Item, Exception], Result],
    max_workers: int,
    label: str = "batch",
) -> List[Result]:
    """
    Run ``operation`` over ``items`` with at most ``max_workers`` threads.

    ``on_error`` turns an exception raised for one item into that item's
    failure result. Results are not ordered.
    """
    work = list(items)
    if not work:
        return []

    workers = max(1, min(len(work), max_workers))
    logger.info(f"Starting {label}: {len(work)} items, {workers} workers")

    results: List[Result] = []
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=label) as executor:
        future_to_item = {executor.submit(operation, item): item for item in work}

        for future in as_completed(future_to_item):
            item = future_to_item[future]
            try:
                results.append(future.result())
            except Exception as e:
                logger.warning(f"{label}: item {item} failed: {e}")
                results.append(on_error(item, e))

    failed = sum(1 for result in results if getattr(result, "success", True) is False)
    logger.info(f"Finished {label}: {len(results) - failed} succeeded, {failed} failed")
    return results
