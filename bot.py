"""Asynchronous Telegram bot relaying messages to the thermal printer."""

import asyncio
import logging
from collections import defaultdict
from logging.handlers import RotatingFileHandler
from time import time
from typing import Any, Awaitable, Callable

from aiogram import BaseMiddleware, Bot, Dispatcher, F, Router
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.filters import Command, CommandObject
from aiogram.types import ErrorEvent, Message, TelegramObject
from aiogram.utils.formatting import Bold, Text

from config import Settings, load_settings
from downloader import TelegramContentSource
from imaging import ImageOptions
from print_service import Notify, PrintService
from print_tasks import (
    BarcodeJob,
    BarcodeKind,
    ImageJob,
    ImageRef,
    JobRecord,
    PrintJob,
    QrJob,
    StickerJob,
    TextJob,
)
from printer import EscposEncoder
from serial_link import open_link

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 1000
MAX_QR_LENGTH = 500
# Commands that send something to the printer and are therefore rate limited
PRINT_COMMANDS = {"qr", "barcode"}

router = Router()


def command_name(text: str) -> str:
    """'/QR@my_bot hello' -> 'qr'."""
    tokens = text.strip().split(maxsplit=1)
    if not tokens or not tokens[0].startswith("/"):
        return ""
    return tokens[0][1:].split("@", 1)[0].lower()


# --- Auth middleware ---
class AuthMiddleware(BaseMiddleware):
    """Allow only whitelisted users."""

    def __init__(self, whitelist: list[int]) -> None:
        self.whitelist = set(whitelist)

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        if event.from_user is None:
            return await handler(event, data)
        if event.from_user.id not in self.whitelist:
            await event.answer("Access denied")
            return
        return await handler(event, data)


# --- Throttling middleware (1 msg / N sec per user, scoped by key) ---
class ThrottlingMiddleware(BaseMiddleware):
    """Rate limit: rate_limit msgs per period seconds per user, scoped by key."""

    def __init__(
        self, key: str = "default", rate_limit: int = 1, period: float = 60.0
    ) -> None:
        self.key = key
        self.rate_limit = rate_limit
        self.period = period
        self.user_timestamps: dict[tuple[str, int], list[float]] = defaultdict(list)

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        # Pass through if there is no user (e.g. service updates)
        if event.from_user is None:
            return await handler(event, data)

        # Only content that reaches the printer is limited; /start, /help, /status are not.
        if isinstance(event, Message) and event.text and event.text.startswith("/"):
            if command_name(event.text) not in PRINT_COMMANDS:
                return await handler(event, data)

        uid = event.from_user.id
        bucket = (self.key, uid)
        now = time()
        timestamps = self.user_timestamps[bucket]
        timestamps[:] = [t for t in timestamps if now - t < self.period]
        if len(timestamps) >= self.rate_limit:
            seconds = int(self.period)
            await event.answer(
                f"Print rate limit exceeded. Limit 1 print per {seconds} sec.\n"
                f"Please wait {seconds} sec and try again."
            )
            return
        timestamps.append(now)
        return await handler(event, data)


def _image_ref(message: Message, file_id: str) -> ImageRef:
    return ImageRef(file_id=file_id, key=f"{message.chat.id}_{message.message_id}")


def _reporter(message: Message) -> Notify:
    """Build the callback that tells the sender how the print went."""

    async def report(record: JobRecord) -> None:
        if record.ok:
            await message.reply(**Text("Printed!").as_kwargs())
        else:
            await message.reply(**Text("Print failed: ", str(record.error)).as_kwargs())

    return report


async def _enqueue(message: Message, service: PrintService, job: PrintJob) -> None:
    await service.submit(job, _reporter(message))
    await message.reply(**Text("Queued for printing!").as_kwargs())


# --- Handlers ---
@router.message(Command("start"))
async def start(message: Message) -> None:
    """Handle /start command."""
    await message.reply(
        **Text("Welcome! Send text, a photo or a static sticker to print.").as_kwargs()
    )


@router.message(Command("help"))
async def help_handler(message: Message, settings: Settings) -> None:
    """Handle /help command - list commands and limits."""
    seconds = settings.print_rate_limit_seconds
    kinds = ", ".join(kind.name for kind in BarcodeKind)
    builder = Text(
        Bold("Commands:"),
        "\n",
        "/start - Welcome and usage\n",
        "/status - Check printer online status\n",
        "/qr <text> - Print text as a QR code\n",
        "/barcode <kind> <code> - Print a barcode\n",
        "/help - List commands and limits\n\n",
        Bold("Printable content:"),
        "\n",
        "text, photos (with caption), static stickers\n",
        f"Barcode kinds: {kinds}\n\n",
        Bold("Limits:"),
        "\n",
        f"• Rate: 1 print per {seconds} seconds\n",
        f"• Text length: max {MAX_TEXT_LENGTH} characters\n",
        f"• QR text length: max {MAX_QR_LENGTH} characters",
    )
    await message.reply(**builder.as_kwargs())


@router.message(Command("status"))
async def status_handler(message: Message, service: PrintService) -> None:
    """Handle /status command."""
    stat = await service.status()
    online = bool(stat.get("online"))
    paper = stat.get("paper")
    if paper == 2:
        paper_text = "adequate"
    elif paper == 1:
        paper_text = "near-end"
    elif paper == 0:
        paper_text = "no paper"
    else:
        paper_text = "unknown"
    builder = Text(
        Bold("Printer online:"),
        f" {online}\n",
        Bold("Paper status:"),
        f" {paper_text}",
    )
    await message.reply(**builder.as_kwargs())


@router.message(Command("qr"))
async def qr_handler(message: Message, command: CommandObject, service: PrintService) -> None:
    """Handle /qr command - print a QR code with given text."""
    text = (command.args or "").strip()
    if not text:
        await message.reply(**Text("Usage: /qr your text to encode").as_kwargs())
        return
    if len(text) > MAX_QR_LENGTH:
        await message.reply(
            **Text(f"QR content too long (max {MAX_QR_LENGTH} characters).").as_kwargs()
        )
        return
    logger.info("QR request from user %s: %s", message.from_user.id, text[:50])
    await _enqueue(message, service, QrJob(payload=text))


@router.message(Command("barcode"))
async def barcode_handler(
    message: Message, command: CommandObject, service: PrintService
) -> None:
    """Handle /barcode command - /barcode EAN13 5901234123457."""
    parts = (command.args or "").split(maxsplit=1)
    kind = BarcodeKind.__members__.get(parts[0].upper()) if parts else None
    if kind is None or len(parts) < 2:
        kinds = ", ".join(k.name for k in BarcodeKind)
        await message.reply(
            **Text(f"Usage: /barcode <kind> <code>\nKinds: {kinds}").as_kwargs()
        )
        return
    payload = parts[1].strip()
    logger.info("Barcode request from user %s: %s %s", message.from_user.id, kind.name, payload)
    await _enqueue(message, service, BarcodeJob(kind=kind, payload=payload))


@router.message(F.text.startswith("/"))
async def unknown_command(message: Message) -> None:
    await message.reply(**Text("Unknown command! Check /help for all commands").as_kwargs())


@router.message(F.photo)
async def photo_handler(message: Message, service: PrintService) -> None:
    """Handle photo messages - queue the largest size for printing."""
    photo = message.photo[-1]
    logger.info("Photo received from user %s: %s", message.from_user.id, photo.file_id[-8:])
    job = ImageJob(source=_image_ref(message, photo.file_id), caption=message.caption)
    await _enqueue(message, service, job)


@router.message(F.sticker)
async def sticker_handler(message: Message, service: PrintService) -> None:
    """Handle stickers - only static ones can be printed."""
    sticker = message.sticker
    if sticker.is_animated or sticker.is_video:
        await message.reply(**Text("Sticker needs to be static!").as_kwargs())
        return
    logger.info("Sticker received from user %s: %s", message.from_user.id, sticker.file_id[-8:])
    await _enqueue(message, service, StickerJob(source=_image_ref(message, sticker.file_id)))


@router.message()
async def handle_message(message: Message, service: PrintService) -> None:
    """Handle arbitrary text to print."""
    text = message.text or message.caption or ""
    if not text.strip():
        await message.reply(**Text("Send text, a photo or a static sticker to print.").as_kwargs())
        return
    if len(text) > MAX_TEXT_LENGTH:
        await message.reply(**Text("Too long!").as_kwargs())
        return
    logger.info("Message received from user %s: %s", message.from_user.id, text[:50])
    await _enqueue(message, service, TextJob(content=text.strip()))


@router.error()
async def error_handler(event: ErrorEvent, bot: Bot, settings: Settings) -> None:
    """Notify admin on handler exceptions."""
    logger.exception("Handler error: %s", event.exception)
    try:
        msg = Text("Error: ", str(event.exception))
        await bot.send_message(settings.admin_id, **msg.as_kwargs())
    except Exception:
        logger.warning("Could not notify admin %s", settings.admin_id)


# --- Setup ---
def setup_logging(settings: Settings) -> None:
    """Rotating file logging."""
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        settings.log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
    )
    logging.basicConfig(
        handlers=[handler],
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_dispatcher(settings: Settings, service: PrintService) -> Dispatcher:
    """Register middleware and router; inject dependencies into handlers."""
    dp = Dispatcher(settings=settings, service=service)
    dp.message.middleware(AuthMiddleware(settings.whitelist))
    dp.message.middleware(
        ThrottlingMiddleware(
            key="print", rate_limit=1, period=float(settings.print_rate_limit_seconds)
        )
    )
    dp.include_router(router)
    return dp


async def main() -> None:
    """Run bot with polling."""
    settings = load_settings()
    setup_logging(settings)
    logger.info("Starting printer bot...")

    bot = Bot(
        token=settings.bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.MARKDOWN_V2),
    )
    link = open_link(settings)
    encoder = EscposEncoder(
        link,
        profile=settings.printer_profile,
        image_impl=settings.image_impl,
        qr_size=settings.qr_size,
        barcode_height=settings.barcode_height,
        barcode_width=settings.barcode_width,
    )
    options = ImageOptions(
        contrast=settings.image_contrast,
        brightness=settings.image_brightness,
        max_width=settings.image_max_width,
        base_path=settings.tmp_dir,
    )
    service = PrintService(encoder, TelegramContentSource(bot, options.base_path), options)
    dp = build_dispatcher(settings, service)

    worker = asyncio.create_task(service.process_queue())
    try:
        await dp.start_polling(bot)
    except Exception as e:
        logger.exception("Bot error: %s", e)
        try:
            msg = Text("Error: ", str(e))
            await bot.send_message(settings.admin_id, **msg.as_kwargs())
        except Exception:
            logger.warning("Could not notify admin %s", settings.admin_id)
        raise
    finally:
        worker.cancel()


if __name__ == "__main__":
    asyncio.run(main())
