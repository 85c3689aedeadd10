"""
Progress reporting for backup operations.

A ProgressSink receives start/end brackets, percent updates, log lines and
errors. Several sinks can observe the same run through a ProgressBroadcaster
(terminal renderer, log mirror, chat notifier). Each sink instance tracks its
own last rendered state; nothing is shared process wide.

Percent values for streamed operations come from ProgressEstimator. When the
total size is unknown, the first chunk times a fixed factor seeds the
estimated total. This is an approximation, not a measurement: the estimate
can be far off, so percents may stall at the cap until completion is
confirmed. Percents never decrease within one operation.
"""

import logging
import sys
from typing import Callable, IO, List, Optional


logger = logging.getLogger(__name__)


PROGRESS_CAP = 95
SEED_FACTOR = 10
MILESTONES = (0, 25, 50, 75, 100)
BAR_WIDTH = 20


class ProgressSink:
    """
    Observer of progress events.

    Subclasses override the hooks they care about; the defaults do nothing.
    """

    def start_operation(self, operation: str):
        pass

    def update_progress(self, percent: int, operation: str, detail: str = ''):
        pass

    def end_operation(self, operation: str, success: bool = True):
        pass

    def log(self, message: str):
        pass

    def error(self, message: str):
        pass

    def run_finished(self, result):
        """Called at most once per run with the final RunResult."""
        pass


class ProgressEstimator:
    """
    Best-effort percent-complete figure for a byte stream.

    Args:
        total: Exact or estimated total in bytes. When None, the first
            chunk multiplied by ``seed_factor`` becomes the estimate.
        seed_factor: Multiplier applied to the first chunk
        cap: Highest percent reported before completion is confirmed
    """

    def __init__(self, total: Optional[int] = None, seed_factor: int = SEED_FACTOR,
                 cap: int = PROGRESS_CAP):
        self.total = total
        self.seed_factor = seed_factor
        self.cap = cap
        self.received = 0
        self.percent = 0

    def add(self, nbytes: int) -> int:
        """Account for ``nbytes`` more bytes and return the current percent."""
        self.received += nbytes

        if self.total is None and self.received > 0:
            self.total = self.received * self.seed_factor

        if self.total:
            estimate = min(self.cap, round(self.received / self.total * 100))
        else:
            estimate = self.cap if self.received else 0

        # Never go backwards within one operation
        self.percent = max(self.percent, estimate)
        return self.percent

    def complete(self) -> int:
        self.percent = 100
        return self.percent


class CountingWriter:
    """
    File-like wrapper that counts bytes written through it.

    Used to observe the compressed output of an archive stream.
    """

    def __init__(self, fileobj: IO[bytes], on_write: Callable[[int], None]):
        self._fileobj = fileobj
        self._on_write = on_write
        self.bytes_written = 0
        self.name = getattr(fileobj, 'name', '')

    def write(self, data) -> int:
        written = self._fileobj.write(data)
        size = len(data)
        self.bytes_written += size
        if size:
            self._on_write(size)
        return written if written is not None else size

    def flush(self):
        self._fileobj.flush()

    def tell(self) -> int:
        return self._fileobj.tell()

    def close(self):
        self._fileobj.close()


def create_progress_bar(percent: int, width: int = BAR_WIDTH) -> str:
    completed = round(percent / 100 * width)
    return '[' + '█' * completed + '░' * (width - completed) + ']'


class TerminalProgress(ProgressSink):
    """
    Renders progress on a terminal.

    On a TTY the progress line is rewritten in place; otherwise only
    milestone percents are printed, once each per operation.
    """

    def __init__(self, stream: Optional[IO[str]] = None, is_tty: Optional[bool] = None):
        self.stream = stream or sys.stdout
        if is_tty is None:
            is_tty = hasattr(self.stream, 'isatty') and self.stream.isatty()
        self.is_tty = is_tty
        self.last_line = ''
        self.last_percent = None
        self._milestones_shown = {}

    def _break_line(self):
        if self.last_line and self.is_tty:
            self.stream.write('\n')
            self.last_line = ''

    def _print(self, text: str):
        self.stream.write(text + '\n')
        self.stream.flush()

    def start_operation(self, operation: str):
        self._break_line()
        self.last_percent = None
        self._milestones_shown = {}
        self._print(f"\n🔧 {operation}...")

    def update_progress(self, percent: int, operation: str, detail: str = ''):
        suffix = f" - {detail}" if detail else ''

        if self.is_tty:
            line = f"📊 {create_progress_bar(percent)} {percent}% - {operation}{suffix}"
            if line == self.last_line:
                return
            if self.last_line:
                self.stream.write('\r\x1b[2K')
            self.stream.write(line)
            self.last_line = line
            if percent >= 100:
                self.stream.write('\n')
                self.last_line = ''
            self.stream.flush()
        else:
            # Only report milestones that were reached and not shown yet
            shown = self._milestones_shown.setdefault(operation, set())
            reached = [m for m in MILESTONES if m <= percent and m not in shown]
            if not reached:
                return
            milestone = reached[-1]
            shown.update(reached)
            self._print(f"📊 Progress: {milestone}% - {operation}{suffix}")

        self.last_percent = percent

    def end_operation(self, operation: str, success: bool = True):
        self._break_line()
        emoji = '✅' if success else '❌'
        self._print(f"{emoji} {operation} {'completed' if success else 'failed'}")

    def log(self, message: str):
        self._break_line()
        self._print(f"📝 {message}")

    def error(self, message: str):
        self._break_line()
        self._print(f"❌ {message}")


class LoggingProgress(ProgressSink):
    """Mirrors progress events into the application log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger
        self._last_milestone = {}

    def start_operation(self, operation: str):
        self._last_milestone = {}
        self.logger.info(f"Starting: {operation}")

    def update_progress(self, percent: int, operation: str, detail: str = ''):
        milestone = max(m for m in MILESTONES if m <= percent)
        if milestone > self._last_milestone.get(operation, -1):
            self._last_milestone[operation] = milestone
            self.logger.debug(f"{operation}: {percent}%{' - ' + detail if detail else ''}")

    def end_operation(self, operation: str, success: bool = True):
        if success:
            self.logger.info(f"Finished: {operation}")
        else:
            self.logger.warning(f"Failed: {operation}")

    def log(self, message: str):
        self.logger.info(message)

    def error(self, message: str):
        self.logger.error(message)


class ProgressBroadcaster(ProgressSink):
    """
    Fans every event out to all subscribed sinks.

    A failing sink is logged and skipped; it never interrupts the run or
    the other sinks.
    """

    def __init__(self, sinks: Optional[List[ProgressSink]] = None):
        self.sinks: List[ProgressSink] = list(sinks or [])

    def subscribe(self, sink: ProgressSink):
        self.sinks.append(sink)

    def _dispatch(self, method: str, *args):
        for sink in self.sinks:
            try:
                getattr(sink, method)(*args)
            except Exception as e:
                logger.warning(f"Progress sink {type(sink).__name__}.{method} failed: {e}")

    def start_operation(self, operation: str):
        self._dispatch('start_operation', operation)

    def update_progress(self, percent: int, operation: str, detail: str = ''):
        self._dispatch('update_progress', percent, operation, detail)

    def end_operation(self, operation: str, success: bool = True):
        self._dispatch('end_operation', operation, success)

    def log(self, message: str):
        self._dispatch('log', message)

    def error(self, message: str):
        self._dispatch('error', message)

    def run_finished(self, result):
        self._dispatch('run_finished', result)
