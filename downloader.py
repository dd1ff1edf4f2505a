"""Fetch original content (photos, stickers) from Telegram."""

from __future__ import annotations

import logging
from pathlib import Path

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from errors import DownloadError
from print_tasks import ImageRef

logger = logging.getLogger(__name__)


class TelegramContentSource:
    """Downloads a file to a per-message temp path and returns its bytes.

    The temp file is deleted afterwards on a best-effort basis.
    """

    def __init__(self, bot: Bot, base_path: Path) -> None:
        self.bot = bot
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def path_for(self, ref: ImageRef) -> Path:
        return self.base_path / f"tmp_{ref.key}"

    async def fetch(self, ref: ImageRef) -> bytes:
        tag = ref.file_id[-8:]
        path = self.path_for(ref)
        try:
            logger.info("[%s] Downloading file to %s", tag, path)
            await self.bot.download(ref.file_id, destination=path)
            return path.read_bytes()
        except (TelegramAPIError, OSError) as e:
            logger.error("[%s] Download failed: %s", tag, e)
            raise DownloadError(f"Failed to download file: {e}") from e
        finally:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("[%s] Failed to delete temp file %s: %s", tag, path, e)
