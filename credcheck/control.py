from concurrent.futures import Future, ThreadPoolExecutor
import logging
import threading

from credcheck.batch import BatchAlreadyRunning, BatchRunner
from credcheck.schemas import BatchResult, Progress, RunOptions


logger = logging.getLogger(__name__)


class BatchController:
    def __init__(self, runner: BatchRunner) -> None:
        self.runner = runner
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="credcheck-batch")
        self._lock = threading.Lock()
        self._future: Future[BatchResult] | None = None

    def start(self, selected_ids: list[int] | None = None, *, only_unchecked: bool = False) -> Future[BatchResult]:
        with self._lock:
            if self.runner.state.is_running or (self._future is not None and not self._future.done()):
                raise BatchAlreadyRunning("a batch is already running")
            options = RunOptions(selected_ids=selected_ids, only_unchecked=only_unchecked)
            self._future = self._executor.submit(self.runner.run, None, options)
            self._future.add_done_callback(self._log_failure)
            return self._future

    def stop(self) -> bool:
        accepted = self.runner.request_stop()
        logger.info("stop requested", extra={"accepted": accepted})
        return accepted

    def get_progress(self) -> Progress:
        return self.runner.progress()

    def wait(self, timeout: float | None = None) -> BatchResult | None:
        with self._lock:
            future = self._future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)

    @staticmethod
    def _log_failure(future: Future[BatchResult]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("batch ended with an error", extra={"reason": str(exc)})
