"""
Flow-controlled parsing of large import files on a worker thread.

The controller hands the file and its parse configuration to a worker once.
The worker parses micro-batches of ``step_size`` rows and hands each one over
through a channel of capacity one, then blocks until the controller answers
on the control channel with ``RESUME`` or ``ABORT``. There is never more than
one micro-batch outstanding.

Example:
    parser = StreamingParser(path, file_type="csv", step_size=500)
    result = parser.run(lambda batch: store.add_rows(batch.rows))
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

from record_transfer.api.schemas.shared import RowErrorDetail
from record_transfer.core.config import settings
from record_transfer.domain.imports.sources import FileSource, RawRow, iter_file_pages

logger = logging.getLogger(__name__)


class StreamingParserError(Exception):
    """Raised when the parse worker cannot be started or the input cannot be read at all."""


class ProducerState(str, Enum):
    RUNNING = "running"
    AWAITING_ACK = "awaiting_ack"
    FINISHED = "finished"


class ControlSignal(str, Enum):
    RESUME = "resume"
    ABORT = "abort"


@dataclass
class ParseBatch:
    """One micro-batch of parsed rows and the row-level errors met while parsing it."""
    index: int
    rows: List[RawRow]
    errors: List[RowErrorDetail] = field(default_factory=list)

    @property
    def fields(self) -> List[str]:
        return list(self.rows[0].keys()) if self.rows else []


@dataclass
class _ParseCompleted:
    steps: int
    aborted: bool


@dataclass
class _ParseFailed:
    error: Exception


_Message = Union[ParseBatch, _ParseCompleted, _ParseFailed]


@dataclass
class ParseResult:
    steps: int                 # rows parsed by the worker
    batches: int               # micro-batches handed to the controller
    aborted: bool = False
    errors: int = 0            # row-level parse errors reported with the batches


StepHandler = Callable[[ParseBatch], None]


class StreamingParser:
    """Runs ``iter_file_pages`` on a worker thread under a pause/resume handshake."""

    def __init__(
        self,
        source: FileSource,
        file_type: str = "csv",
        step_size: Optional[int] = None,
        delimiter: str = ",",
        encoding: str = "utf-8",
    ):
        self.source = source
        self.file_type = file_type
        self.step_size = step_size or settings.worker_step_size
        self.delimiter = delimiter
        self.encoding = encoding

        self._batches: "queue.Queue[_Message]" = queue.Queue(maxsize=1)
        self._control: "queue.Queue[ControlSignal]" = queue.Queue(maxsize=1)
        self._state = ProducerState.RUNNING
        self._state_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> ProducerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ProducerState) -> None:
        with self._state_lock:
            self._state = state

    # Worker side -----------------------------------------------------------

    def _deliver(self, batch: ParseBatch) -> bool:
        """Hand a batch over and wait for the answer. Returns False on abort."""
        self._set_state(ProducerState.AWAITING_ACK)
        self._batches.put(batch)
        signal = self._control.get()
        if signal is ControlSignal.ABORT:
            return False
        self._set_state(ProducerState.RUNNING)
        return True

    def _work(self) -> None:
        steps = 0
        batch_index = 0
        try:
            pages = iter_file_pages(
                self.source, self.file_type, self.step_size, delimiter=self.delimiter, encoding=self.encoding
            )
            for page in pages:
                steps += len(page)
                if not self._deliver(ParseBatch(index=batch_index, rows=list(page), errors=list(page.errors))):
                    logger.info("Parse worker aborted after %d rows", steps)
                    pages.close()
                    self._batches.put(_ParseCompleted(steps=steps, aborted=True))
                    return
                batch_index += 1
            self._batches.put(_ParseCompleted(steps=steps, aborted=False))
        except Exception as exc:
            logger.exception("Parse worker failed after %d rows", steps)
            self._batches.put(_ParseFailed(error=exc))
        finally:
            self._set_state(ProducerState.FINISHED)

    # Controller side -------------------------------------------------------

    def run(self, step: StepHandler) -> ParseResult:
        """
        Parse the whole input, calling ``step`` once per micro-batch.

        Args:
            step: Handler for each micro-batch; raising aborts the parse

        Returns:
            ParseResult with the number of rows parsed

        Raises:
            StreamingParserError: If the worker cannot start or the input is unreadable
            Exception: Whatever ``step`` raised, after the worker has stopped
        """
        try:
            self._thread = threading.Thread(target=self._work, name="parse-worker", daemon=True)
            self._thread.start()
        except RuntimeError as exc:
            raise StreamingParserError(f"Could not start parse worker: {exc}") from exc

        batches = 0
        error_count = 0
        handler_error: Optional[BaseException] = None
        completed: Optional[_ParseCompleted] = None

        while completed is None:
            message = self._batches.get()
            if isinstance(message, _ParseFailed):
                self._thread.join()
                raise StreamingParserError(f"Failed to parse {self.file_type} input: {message.error}") from message.error
            if isinstance(message, _ParseCompleted):
                completed = message
                break

            batches += 1
            error_count += len(message.errors)
            try:
                step(message)
            except Exception as exc:
                logger.error("Step handler failed on batch %d, aborting parse: %s", message.index, exc)
                handler_error = exc
                self._control.put(ControlSignal.ABORT)
                continue
            self._control.put(ControlSignal.RESUME)

        self._thread.join()
        if handler_error is not None:
            raise handler_error

        logger.info("Parsed %d rows in %d batches", completed.steps, batches)
        return ParseResult(steps=completed.steps, batches=batches, aborted=completed.aborted, errors=error_count)
