"""Import options, progress events and progress sinks.

Progress reporting is kept separate from ImportOptions: options are plain
configuration, while a ProgressSink receives ImportProgress events. Callers
that need to ship events across a process boundary wrap their own transport
in a sink.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class ImportStage(str, Enum):
    """Import pipeline stages."""

    DISCOVERING = "discovering"
    VALIDATING = "validating"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class ImportProgress(BaseModel):
    """Transient progress event emitted during one import call."""

    stage: ImportStage
    progress: float = Field(0.0, ge=0.0, le=100.0)
    message: str = ""
    current_book: Optional[str] = None
    total_books: Optional[int] = None
    processed_books: Optional[int] = None


class ImportOptions(BaseModel):
    """Configuration for one import invocation."""

    repository_url: str
    validate_checksums: bool = Field(True, description="Verify book file checksums")
    download_audio: bool = Field(False, description="Fetch audio assets (unused)")
    overwrite_existing: bool = Field(
        False, description="Replace translations that are already imported"
    )


@runtime_checkable
class ProgressSink(Protocol):
    """Receives progress events from the importer."""

    def report(self, progress: ImportProgress) -> None:
        ...


class NullProgressSink:
    """Discards every event."""

    def report(self, progress: ImportProgress) -> None:
        return None


class CallbackProgressSink:
    """Forwards events to a plain callable."""

    def __init__(self, callback: Callable[[ImportProgress], None]):
        self._callback = callback

    def report(self, progress: ImportProgress) -> None:
        self._callback(progress)


class RecordingProgressSink:
    """Keeps every event in order."""

    def __init__(self) -> None:
        self.events: list[ImportProgress] = []

    def report(self, progress: ImportProgress) -> None:
        self.events.append(progress)

    @property
    def stages(self) -> list[ImportStage]:
        return [e.stage for e in self.events]


class ScaledProgressSink:
    """Maps a nested import's 0-100 progress into a band of the outer import.

    Terminal stages of the nested import are reported as PROCESSING so only
    the outermost import emits COMPLETE or ERROR.
    """

    def __init__(self, inner: ProgressSink, start: float, end: float):
        self._inner = inner
        self._start = start
        self._end = end

    def report(self, progress: ImportProgress) -> None:
        scaled = self._start + (self._end - self._start) * progress.progress / 100.0
        stage = progress.stage
        if stage in (ImportStage.COMPLETE, ImportStage.ERROR):
            stage = ImportStage.PROCESSING
        self._inner.report(
            progress.model_copy(
                update={"stage": stage, "progress": round(scaled, 2)}
            )
        )
