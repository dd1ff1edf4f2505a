"""Configuration module - loads settings from .env file."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _get_required(key: str) -> str:
    """Get required env var; log warning and raise if missing."""
    value = os.getenv(key)
    if not value or not value.strip():
        logger.warning("Missing or empty required key in .env: %s", key)
        raise ValueError(f"Missing required environment variable: {key}")
    return value.strip()


def _parse_whitelist(value: str | None) -> list[int]:
    """Parse comma-separated string of integers into list[int].
    Handles both '1,2,3' and '[1,2,3]' formats.
    """
    if not value or not value.strip():
        return []
    raw = value.strip()
    if raw.startswith("[") and raw.endswith("]"):
        raw = raw[1:-1]
    return [int(x.strip()) for x in raw.split(",") if x.strip()]


def _parse_bool(value: str | None) -> bool:
    """Parse string to bool; default False for missing/invalid."""
    if not value:
        return False
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_int(key: str, default: int) -> int:
    """Read an int; fall back to default (with a warning) if it does not parse."""
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %s", key, raw, default)
        return default


def _parse_float(key: str, default: float) -> float:
    """Read a float; fall back to default (with a warning) if it does not parse."""
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("Invalid number for %s=%r, using default %s", key, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    bot_token: str
    admin_id: int
    whitelist: list[int] = field(default_factory=list)

    # Serial link
    serial_port: str = "/dev/ttyUSB0"
    baudrate: int = 9600
    serial_timeout: float = 5.0
    mock_printer: bool = False
    # python-escpos profile name, e.g. "RP326"; None selects the default profile
    printer_profile: str | None = None

    # Image pipeline
    image_max_width: int = 384
    image_contrast: float = 0.0
    image_brightness: int = 0
    image_impl: str = "bitImageRaster"
    tmp_dir: Path = Path("tmp")

    qr_size: int = 8
    barcode_height: int = 64
    barcode_width: int = 3

    print_rate_limit_seconds: int = 20

    log_file: Path = Path("logs/app.log")
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Load .env (if present) and build the process-wide Settings."""
    if not load_dotenv():
        logger.warning(".env file not found, reading settings from the environment only")

    profile = os.getenv("PRINTER_PROFILE", "").strip()
    return Settings(
        # Required
        bot_token=_get_required("BOT_TOKEN"),
        admin_id=int(_get_required("ADMIN_ID")),
        # Optional with defaults
        whitelist=_parse_whitelist(os.getenv("WHITELIST")),
        serial_port=os.getenv("SERIAL_PORT", "/dev/ttyUSB0").strip(),
        baudrate=_parse_int("BAUDRATE", 9600),
        serial_timeout=_parse_float("SERIAL_TIMEOUT", 5.0),
        mock_printer=_parse_bool(os.getenv("MOCK_PRINTER", "false")),
        printer_profile=profile or None,
        image_max_width=_parse_int("IMAGE_MAX_WIDTH", 384),
        image_contrast=_parse_float("IMAGE_CONTRAST", 0.0),
        image_brightness=_parse_int("IMAGE_BRIGHTNESS", 0),
        image_impl=os.getenv("IMAGE_IMPL", "bitImageRaster").strip(),
        tmp_dir=Path(os.getenv("TMP_DIR", "tmp").strip()),
        qr_size=_parse_int("QR_SIZE", 8),
        barcode_height=_parse_int("BARCODE_HEIGHT", 64),
        barcode_width=_parse_int("BARCODE_WIDTH", 3),
        print_rate_limit_seconds=_parse_int("PRINT_RATE_LIMIT_SECONDS", 20),
        log_file=Path(os.getenv("LOG_FILE", "logs/app.log").strip()),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
