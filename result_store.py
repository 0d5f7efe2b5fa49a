"""In-memory result store keyed by extraction id.

Results live for the lifetime of the process only; nothing is written to disk.
"""

import logging
import threading
import time

from models import ExtractionResult

logger = logging.getLogger(__name__)


class ResultNotFound(KeyError):
    """No stored result for the given extraction id."""

    def __init__(self, result_id: str):
        super().__init__(result_id)
        self.result_id = result_id

    def __str__(self) -> str:
        return f"No extraction result for id {self.result_id!r}"


class ResultStore:
    """Thread-safe map from time-based extraction ids to results.

    Ids are nanosecond timestamps, bumped when two writes land in the same
    tick, so an id is never issued twice within a process.
    """

    def __init__(self):
        self._results: dict[str, ExtractionResult] = {}
        self._lock = threading.Lock()
        self._last_id = 0

    def put(self, result: ExtractionResult) -> str:
        with self._lock:
            stamp = max(time.time_ns(), self._last_id + 1)
            self._last_id = stamp
            result_id = str(stamp)
            self._results[result_id] = result

        logger.info("Stored result %s (%d fields)", result_id, len(result.extracted_fields))
        return result_id

    def get(self, result_id: str) -> ExtractionResult:
        with self._lock:
            try:
                return self._results[result_id]
            except KeyError:
                raise ResultNotFound(result_id) from None

    def delete(self, result_id: str) -> None:
        with self._lock:
            if self._results.pop(result_id, None) is None:
                raise ResultNotFound(result_id)

    def __contains__(self, result_id: object) -> bool:
        with self._lock:
            return result_id in self._results

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)
