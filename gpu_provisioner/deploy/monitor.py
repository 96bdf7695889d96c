"""
Apply monitor: a state machine over the ``terraform apply`` output stream.

Progress is derived from fixed textual markers, one line at a time, and an
apply only counts as successful when the completion marker was seen.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Pattern, Tuple

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from ..core.models import ApplyProgress

logger = logging.getLogger(__name__)

MAX_NAME_WIDTH = 45
MODULE_PREFIX = re.compile(r'^(module\.[^.]+\.)+')


class MonitorState(str, Enum):
    IDLE = "idle"
    RESOURCE_CREATING = "resource_creating"
    RESOURCE_STILL_CREATING = "resource_still_creating"
    RESOURCE_CREATED = "resource_created"
    COMPLETE = "complete"
    FAILED = "failed"


class StreamEvent(str, Enum):
    CREATING = "creating"
    STILL_CREATING = "still_creating"
    CREATED = "created"
    ERROR = "error"
    COMPLETE = "complete"


# Checked in order; "Still creating..." must win over "Creating..."
STREAM_MARKERS: Tuple[Tuple[Pattern, StreamEvent], ...] = (
    (re.compile(r'^(?P<address>\S+): Creation complete after (?P<elapsed>\S+)'), StreamEvent.CREATED),
    (re.compile(r'^(?P<address>\S+): Still creating\.\.\. \[(?P<elapsed>[^\]]*?)\s*elapsed\]'),
     StreamEvent.STILL_CREATING),
    (re.compile(r'^(?P<address>\S+): Creating\.\.\.'), StreamEvent.CREATING),
    (re.compile(r'^(│ )?Error:'), StreamEvent.ERROR),
    (re.compile(r'Apply complete!'), StreamEvent.COMPLETE),
)

ERROR_BLOCK_END = '╵'


def match_marker(line: str) -> Optional[Tuple[StreamEvent, Optional[re.Match]]]:
    """Return the first stream event whose marker matches ``line``."""
    for pattern, event in STREAM_MARKERS:
        match = pattern.search(line)
        if match:
            return event, match
    return None


def display_name(address: Optional[str]) -> str:
    """Shorten a resource address for the progress line."""
    if not address:
        return ""
    name = MODULE_PREFIX.sub('', address)
    if len(name) > MAX_NAME_WIDTH:
        name = name[:MAX_NAME_WIDTH - 3] + "..."
    return name


@dataclass
class ApplyOutcome:
    """Result of one monitored apply."""
    success: bool
    progress: ApplyProgress
    error_text: str = ""
    returncode: Optional[int] = None
    unexpected_termination: bool = False


class ApplyMonitor:
    """Tracks progress and failure of one apply run.

    Args:
        total_resources: Resource count from the plan summary, or None when
            the plan could not be read
        default_total: Fallback count used only when ``total_resources`` is None
        on_progress: Called with the progress after every tracked event
    """

    def __init__(
        self,
        total_resources: Optional[int],
        default_total: int = 59,
        on_progress: Optional[Callable[[ApplyProgress], None]] = None,
    ):
        if total_resources is None:
            logger.info(f"No plan summary available; assuming {default_total} resources")
            total_resources = default_total
        self.progress = ApplyProgress(total_resources=total_resources)
        self.on_progress = on_progress
        self.state = MonitorState.IDLE
        self.completed = False
        self.error_lines: List[str] = []
        self._in_error_block = False

    @property
    def errored(self) -> bool:
        return bool(self.error_lines)

    def feed(self, line: str) -> MonitorState:
        """Advance the state machine by one output line."""
        line = line.rstrip('\r\n')
        logger.debug(f"apply: {line}")

        if self._in_error_block:
            self.error_lines.append(line)
            if line.startswith(ERROR_BLOCK_END):
                self._in_error_block = False
            return self.state

        matched = match_marker(line)
        if matched is None:
            return self.state
        event, match = matched

        if event is StreamEvent.CREATING:
            self.state = MonitorState.RESOURCE_CREATING
            self.progress.current_resource_name = display_name(match.group('address'))
            self.progress.current_resource_status = "creating"
        elif event is StreamEvent.STILL_CREATING:
            self.state = MonitorState.RESOURCE_STILL_CREATING
            self.progress.current_resource_name = display_name(match.group('address'))
            self.progress.current_resource_status = f"still creating ({match.group('elapsed')})"
        elif event is StreamEvent.CREATED:
            self.state = MonitorState.RESOURCE_CREATED
            self.progress.created_count += 1
            self.progress.current_resource_name = display_name(match.group('address'))
            self.progress.current_resource_status = f"created ({match.group('elapsed')})"
        elif event is StreamEvent.ERROR:
            self.state = MonitorState.FAILED
            self._in_error_block = True
            self.error_lines.append(line)
            logger.error(f"Terraform reported: {line.lstrip('│ ')}")
        elif event is StreamEvent.COMPLETE:
            self.completed = True
            if not self.errored:
                self.state = MonitorState.COMPLETE

        if self.on_progress is not None:
            self.on_progress(self.progress)
        return self.state

    def finish(self, returncode: Optional[int] = None) -> ApplyOutcome:
        """Conclude the run once the stream has ended.

        Success requires the completion marker, no error block and a zero
        (or unknown) exit code. A stream that ends with neither marker is an
        unexpected termination and counts as failure.
        """
        unexpected = not self.completed and not self.errored
        success = self.completed and not self.errored and returncode in (None, 0)
        if success:
            self.state = MonitorState.COMPLETE
        else:
            self.state = MonitorState.FAILED
            if unexpected:
                logger.error("Apply output ended without a completion or error marker")

        error_text = "\n".join(self.error_lines)
        if not success and not error_text:
            error_text = (
                f"terraform apply exited with code {returncode}" if returncode
                else "terraform apply terminated unexpectedly"
            )
        return ApplyOutcome(
            success=success,
            progress=self.progress,
            error_text=error_text,
            returncode=returncode,
            unexpected_termination=unexpected,
        )

    def consume(self, lines: Iterable[str]) -> ApplyOutcome:
        """Feed a whole stream; picks up ``returncode`` from an ApplyStream."""
        for line in lines:
            self.feed(line)
        return self.finish(getattr(lines, 'returncode', None))


class ProgressRenderer:
    """Renders apply progress as a rich progress bar."""

    def __init__(self, console: Console, total_resources: int):
        self.console = console
        self.total_resources = total_resources
        self._progress = Progress(
            SpinnerColumn(),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            TextColumn("({task.completed}/{task.total})"),
            TextColumn("[bold]{task.description}"),
            console=console,
        )
        self._task = None

    def __enter__(self) -> "ProgressRenderer":
        self._progress.start()
        self._task = self._progress.add_task("Waiting for Terraform...", total=max(self.total_resources, 0))
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.stop()

    def update(self, progress: ApplyProgress) -> None:
        description = progress.current_resource_name or ""
        if progress.current_resource_status:
            description = f"{description:<{MAX_NAME_WIDTH}} {progress.current_resource_status}"
        self._progress.update(
            self._task,
            completed=min(progress.created_count, max(progress.total_resources, 0)),
            description=description,
        )
