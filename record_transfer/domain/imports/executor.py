"""
Concurrency-bounded execution of operation packages.

Requests are split into sub-batches; each sub-batch is one ``execute_multiple``
call that the remote service runs as a unit while still reporting one result
per request. At most ``parallel`` sub-batches are in flight at any moment.
Sub-batches are dispatched in order; they may complete in any order.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from record_transfer.core.config import settings
from record_transfer.domain.records import OperationRequest, OperationResult, RecordService

logger = logging.getLogger(__name__)

# How often a dispatcher blocked on the concurrency bound re-checks for cancellation
_DISPATCH_POLL_SECONDS = 0.05


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running job."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class BatchResult:
    results: List[OperationResult] = field(default_factory=list)  # in request order, dispatched requests only
    success: int = 0
    failed: int = 0
    sub_batches: int = 0
    not_dispatched: int = 0
    cancelled: bool = False


class BatchExecutor:
    def __init__(
        self,
        records: RecordService,
        batch_size: Optional[int] = None,
        parallel: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.records = records
        self.batch_size = batch_size or settings.batch_size
        self.parallel = parallel or settings.batch_parallel
        if self.batch_size < 1 or self.parallel < 1:
            raise ValueError("batch_size and parallel must be at least 1")
        self.cancel_token = cancel_token or CancellationToken()

    def _execute_sub_batch(self, index: int, chunk: Sequence[OperationRequest]) -> List[OperationResult]:
        try:
            results = list(self.records.execute_multiple(chunk))
        except Exception as exc:
            logger.warning("Sub-batch %d (%d requests) failed: %s", index, len(chunk), exc)
            return [OperationResult(success=False, error=str(exc)) for _ in chunk]

        if len(results) != len(chunk):
            message = f"Expected {len(chunk)} results, got {len(results)}"
            logger.warning("Sub-batch %d returned an incomplete response: %s", index, message)
            return [OperationResult(success=False, error=message) for _ in chunk]
        return results

    def _acquire_slot(self, slots: threading.BoundedSemaphore) -> bool:
        while not slots.acquire(timeout=_DISPATCH_POLL_SECONDS):
            if self.cancel_token.cancelled:
                return False
        return True

    def run(self, requests: Sequence[OperationRequest]) -> BatchResult:
        """
        Execute all requests, honouring the concurrency bound and cancellation.

        Cancellation stops dispatching further sub-batches; sub-batches already
        in flight are awaited and their results collected.
        """
        chunks = [requests[start:start + self.batch_size] for start in range(0, len(requests), self.batch_size)]
        outcome = BatchResult()
        futures: List[Future] = []
        slots = threading.BoundedSemaphore(self.parallel)
        started = time.perf_counter()

        with ThreadPoolExecutor(max_workers=self.parallel, thread_name_prefix="sub-batch") as pool:
            for index, chunk in enumerate(chunks):
                acquired = not self.cancel_token.cancelled and self._acquire_slot(slots)
                if acquired and self.cancel_token.cancelled:
                    slots.release()
                    acquired = False
                if not acquired:
                    outcome.cancelled = True
                    outcome.not_dispatched = sum(len(rest) for rest in chunks[index:])
                    logger.info("Batch execution cancelled; %d requests not dispatched", outcome.not_dispatched)
                    break
                future = pool.submit(self._execute_sub_batch, index, chunk)
                future.add_done_callback(lambda _: slots.release())
                futures.append(future)

            for future in futures:
                outcome.results.extend(future.result())

        outcome.sub_batches = len(futures)
        outcome.success = sum(1 for result in outcome.results if result.success)
        outcome.failed = len(outcome.results) - outcome.success
        logger.info(
            "Executed %d requests in %d sub-batches (parallel=%d): %d succeeded, %d failed in %.2fs",
            len(outcome.results),
            outcome.sub_batches,
            self.parallel,
            outcome.success,
            outcome.failed,
            time.perf_counter() - started,
        )
        return outcome
