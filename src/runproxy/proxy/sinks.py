"""
Event sinks shipped with the package. The coordinator accepts any `EventSink`, these are for the
command line entrypoint and for embedding where just recording the events suffices
"""

import logging
import threading

from runproxy.low.core import MessageLevel, RunCompleteReport, RunStatistics, UnitResult

logger = logging.getLogger(__name__)

_log_levels = {
    MessageLevel.informational: logging.INFO,
    MessageLevel.warning: logging.WARNING,
    MessageLevel.error: logging.ERROR,
}


class RecordingSink:
    """Logs and keeps every event of a run. `wait` blocks until the run completes"""

    def __init__(self, keep_raw: bool = True) -> None:
        self.keep_raw = keep_raw
        self.raw_messages: list[str] = []
        self.log_messages: list[tuple[MessageLevel, str]] = []
        self.results: list[UnitResult] = []
        self.statistics: RunStatistics | None = None
        self.report: RunCompleteReport | None = None
        self.completed = threading.Event()
        self.lock = threading.Lock()

    def on_raw_message(self, text: str) -> None:
        if self.keep_raw:
            with self.lock:
                self.raw_messages.append(text)

    def on_log_message(self, level: MessageLevel, text: str) -> None:
        logger.log(_log_levels[level], f"worker: {text}")
        with self.lock:
            self.log_messages.append((level, text))

    def on_stats_change(self, statistics: RunStatistics, new_results: list[UnitResult]) -> None:
        logger.debug(f"{statistics.executed} units executed")
        with self.lock:
            self.statistics = statistics
            self.results.extend(new_results)

    def on_run_complete(
        self,
        report: RunCompleteReport,
        last_chunk: list[UnitResult] | None,
        attachments: list[str] | None,
        executor_uris: list[str] | None,
    ) -> None:
        logger.debug(f"run complete: aborted={report.is_aborted}, canceled={report.is_canceled}")
        with self.lock:
            if last_chunk:
                self.results.extend(last_chunk)
            if report.statistics is not None:
                self.statistics = report.statistics
            self.report = report
        self.completed.set()

    def wait(self, timeout_sec: float | None = None) -> RunCompleteReport | None:
        self.completed.wait(timeout_sec)
        with self.lock:
            return self.report
