"""Print job model: the closed set of job variants and their lifecycle.

Each variant carries only the data it needs. A :class:`JobRecord` follows one
job through ``CONSTRUCTED -> PREPARED -> COMMITTED``; any state may move to
``FAILED``, which keeps the originating error.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Union

from errors import PrintError


class BarcodeKind(enum.Enum):
    """Supported symbologies; values are python-escpos barcode names."""

    EAN13 = "EAN13"
    EAN8 = "EAN8"
    UPCA = "UPC-A"
    UPCE = "UPC-E"
    CODE39 = "CODE39"
    CODABAR = "NW7"
    ITF = "ITF"


@dataclass(frozen=True)
class ImageRef:
    """Opaque file identifier plus a per-message key for temp file names."""

    file_id: str
    key: str


@dataclass(frozen=True)
class TextJob:
    content: str


@dataclass(frozen=True)
class ImageJob:
    source: ImageRef
    caption: str | None = None


@dataclass(frozen=True)
class StickerJob:
    source: ImageRef


@dataclass(frozen=True)
class QrJob:
    payload: str


@dataclass(frozen=True)
class BarcodeJob:
    kind: BarcodeKind
    payload: str


PrintJob = Union[TextJob, ImageJob, StickerJob, QrJob, BarcodeJob]


class JobState(enum.Enum):
    CONSTRUCTED = "constructed"
    PREPARED = "prepared"
    COMMITTED = "committed"
    FAILED = "failed"


_TRANSITIONS = {
    JobState.CONSTRUCTED: {JobState.PREPARED, JobState.FAILED},
    JobState.PREPARED: {JobState.COMMITTED, JobState.FAILED},
    JobState.COMMITTED: set(),
    JobState.FAILED: set(),
}


class JobRecord:
    """Mutable lifecycle tracker for one print job."""

    def __init__(self, job: PrintJob) -> None:
        self.job = job
        self.state = JobState.CONSTRUCTED
        self.error: PrintError | None = None

    def advance(self, state: JobState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal job transition {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, error: PrintError) -> None:
        self.advance(JobState.FAILED)
        self.error = error

    @property
    def ok(self) -> bool:
        return self.state is JobState.COMMITTED

    def __repr__(self) -> str:
        return f"JobRecord({describe(self.job)!r}, state={self.state.value})"


def describe(job: PrintJob) -> str:
    """Short preview of a job for log lines."""
    if isinstance(job, TextJob):
        return job.content[:40]
    if isinstance(job, ImageJob):
        return f"Image:{job.source.key}"
    if isinstance(job, StickerJob):
        return f"Sticker:{job.source.key}"
    if isinstance(job, QrJob):
        return f"QR:{job.payload[:40]}"
    if isinstance(job, BarcodeJob):
        return f"Barcode:{job.kind.name}:{job.payload[:40]}"
    raise TypeError(f"Unknown job type: {type(job)}")
