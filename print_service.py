"""Print orchestration: fetch, preprocess, stage and commit one job at a time."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

import imaging
from errors import PrintError
from imaging import Bitmap, ImageOptions
from print_tasks import (
    BarcodeJob,
    ImageJob,
    ImageRef,
    JobRecord,
    JobState,
    PrintJob,
    QrJob,
    StickerJob,
    TextJob,
    describe,
)
from printer import EscposEncoder, EscposSession

logger = logging.getLogger(__name__)

Notify = Callable[[JobRecord], Awaitable[None]]


class ContentSource(Protocol):
    async def fetch(self, ref: ImageRef) -> bytes: ...


@dataclass(frozen=True)
class QueuedJob:
    job: PrintJob
    notify: Notify | None = None


class PrintService:
    """Runs print jobs against the printer.

    ``print`` may be called concurrently; racing jobs contend for the serial
    link and the loser fails with ``DeviceBusyError``. ``submit`` plus the
    ``process_queue`` worker prints jobs one by one in arrival order.
    """

    def __init__(
        self,
        encoder: EscposEncoder,
        content: ContentSource,
        options: ImageOptions,
    ) -> None:
        self.encoder = encoder
        self.content = content
        self.options = options
        # Queue holds QueuedJob objects (job + reply callback)
        self.queue: asyncio.Queue[QueuedJob] = asyncio.Queue()

    async def print(self, job: PrintJob) -> JobRecord:
        """Print one job; the returned record is COMMITTED or FAILED."""
        record = JobRecord(job)
        loop = asyncio.get_running_loop()
        try:
            bitmap: Bitmap | None = None
            if isinstance(job, (ImageJob, StickerJob)):
                source = await self.content.fetch(job.source)
                # CPU-bound, keep it off the event loop
                bitmap = await loop.run_in_executor(
                    None, imaging.process, source, self.options, job.source.key
                )
            await loop.run_in_executor(None, self._do_print, record, bitmap)
        except PrintError as e:
            record.fail(e)
            logger.error("Print failed (%s) for %r: %s", e.kind, describe(job), e)
            return record
        logger.info("Printed: %s", describe(job))
        return record

    def _do_print(self, record: JobRecord, bitmap: Bitmap | None) -> None:
        """Blocking stage + commit (runs in executor)."""
        session = self.encoder.init()
        try:
            self._stage(session, record.job, bitmap)
            record.advance(JobState.PREPARED)
            session.commit()
            record.advance(JobState.COMMITTED)
        finally:
            # A session that failed mid-way still holds the line
            session.close()

    @staticmethod
    def _stage(session: EscposSession, job: PrintJob, bitmap: Bitmap | None) -> None:
        if isinstance(job, TextJob):
            session.write_line(job.content)
        elif isinstance(job, (ImageJob, StickerJob)):
            if bitmap is None:
                raise ValueError(f"{type(job).__name__} staged without a bitmap")
            session.write_bitmap(bitmap.data)
            if isinstance(job, ImageJob) and job.caption:
                session.write_line(job.caption)
        elif isinstance(job, QrJob):
            session.write_qr(job.payload)
        elif isinstance(job, BarcodeJob):
            session.write_barcode(job.kind, job.payload)
        else:
            raise TypeError(f"Unknown job type: {type(job)}")

    async def submit(self, job: PrintJob, notify: Notify | None = None) -> None:
        """Queue a job for the serializing worker."""
        await self.queue.put(QueuedJob(job=job, notify=notify))

    async def process_queue(self) -> None:
        """Process print queue continuously."""
        while True:
            item = await self.queue.get()
            try:
                try:
                    record = await self.print(item.job)
                except Exception as e:
                    logger.error("Unexpected error printing %r: %s", item.job, e, exc_info=True)
                    record = JobRecord(item.job)
                    record.fail(PrintError(f"Unexpected printer error: {e}"))
                if item.notify is not None:
                    await item.notify(record)
            except Exception as e:
                logger.error("Queue processing failed for %r: %s", item.job, e, exc_info=True)
            finally:
                self.queue.task_done()

    async def status(self) -> dict[str, object]:
        """Return printer online + paper status."""
        try:
            return await asyncio.get_running_loop().run_in_executor(None, self.encoder.status)
        except PrintError as e:
            logger.error("Status check failed: %s", e)
            return {"online": False, "paper": None}
