"""ESC/POS printer sessions on top of a SerialLink, using python-escpos.

python-escpos renders each command into an in-memory ``Dummy`` printer; the
rendered bytes are pushed to the serial link only once a command has been
rendered successfully. A rejected barcode or an unreadable bitmap therefore
never puts a single byte on the wire.
"""

from __future__ import annotations

import io
import logging
from typing import Any

from escpos.constants import (
    RT_MASK_LOWPAPER,
    RT_MASK_NOPAPER,
    RT_MASK_ONLINE,
    RT_MASK_PAPER,
    RT_STATUS_ONLINE,
    RT_STATUS_PAPER,
)
from escpos.exceptions import (
    BarcodeCodeError,
    BarcodeSizeError,
    BarcodeTypeError,
    ImageWidthError,
)
from escpos.printer import Dummy
from PIL import Image, UnidentifiedImageError

from errors import ImageEncodeError, InvalidPayloadError
from print_tasks import BarcodeKind
from serial_link import SerialLink

logger = logging.getLogger(__name__)


class EscposSession:
    """One print session: init, staged content, cut."""

    def __init__(
        self,
        link: SerialLink,
        profile: str | None = None,
        image_impl: str = "bitImageRaster",
        qr_size: int = 8,
        barcode_height: int = 64,
        barcode_width: int = 3,
    ) -> None:
        self._link = link
        self._buffer = Dummy(profile=profile)
        self._image_impl = image_impl
        self._qr_size = qr_size
        self._barcode_height = barcode_height
        self._barcode_width = barcode_width
        # ESC @ goes out together with the first staged command
        self._buffer.hw("INIT")

    def _push(self) -> None:
        data = self._buffer.output
        self._buffer.clear()
        if data:
            # Held until commit() or close(); a second session gets DeviceBusyError here
            self._link.reserve()
            self._link.write(data)

    def close(self) -> None:
        """Give the line back; safe to call more than once."""
        self._link.release()

    def _reinitialize(self) -> None:
        """ESC @ after graphics so following text is not garbled.

        Some printers (e.g. CSN-A2) stay in graphics mode after an image
        until they are re-initialized.
        """
        self._buffer.hw("INIT")

    def write_line(self, text: str) -> None:
        self._buffer.textln(text)
        self._push()

    def write_bitmap(self, data: bytes) -> None:
        """Print a PNG (or any Pillow-readable) bitmap."""
        try:
            with Image.open(io.BytesIO(data)) as img:
                self._buffer.image(
                    img,
                    impl=self._image_impl,
                    high_density_vertical=True,
                    high_density_horizontal=True,
                )
        except (UnidentifiedImageError, OSError) as e:
            raise ImageEncodeError(f"Printer could not read bitmap: {e}") from e
        except ImageWidthError as e:
            raise ImageEncodeError(f"Bitmap is wider than the paper: {e}") from e
        self._reinitialize()
        self._push()

    def write_barcode(self, kind: BarcodeKind, payload: str) -> None:
        if not self._buffer.check_barcode(kind.value, payload):
            raise InvalidPayloadError(
                f"Invalid {kind.name} barcode {payload!r}: wrong length or characters"
            )
        try:
            self._buffer.barcode(
                payload,
                kind.value,
                height=self._barcode_height,
                width=self._barcode_width,
                pos="BELOW",
                check=True,
            )
        except (BarcodeTypeError, BarcodeSizeError, BarcodeCodeError) as e:
            raise InvalidPayloadError(f"Invalid {kind.name} barcode {payload!r}: {e}") from e
        self._push()

    def write_qr(self, payload: str) -> None:
        # Software-rendered QR (native=False) keeps UTF-8 payloads scannable
        image_arguments: dict[str, Any] = {
            "impl": self._image_impl,
            "high_density_vertical": True,
            "high_density_horizontal": True,
        }
        self._buffer.qr(payload, native=False, size=self._qr_size, image_arguments=image_arguments)
        self._reinitialize()
        self._push()

    def commit(self) -> None:
        """Cut the paper, flush everything to the device and release the line."""
        try:
            self._buffer.cut(mode="PART")
            self._push()
            self._link.flush()
        finally:
            self.close()


class EscposEncoder:
    """Factory for sessions sharing one serial link."""

    def __init__(
        self,
        link: SerialLink,
        profile: str | None = None,
        image_impl: str = "bitImageRaster",
        qr_size: int = 8,
        barcode_height: int = 64,
        barcode_width: int = 3,
    ) -> None:
        try:
            Dummy(profile=profile)
        except KeyError as e:
            raise ValueError(f"Unknown printer profile: {profile!r}") from e
        self.link = link
        self._session_args: dict[str, Any] = {
            "profile": profile,
            "image_impl": image_impl,
            "qr_size": qr_size,
            "barcode_height": barcode_height,
            "barcode_width": barcode_width,
        }

    def init(self) -> EscposSession:
        return EscposSession(self.link.clone(), **self._session_args)

    def _query_status(self, request: bytes) -> int | None:
        """Send a DLE EOT real-time status request, return the reply byte."""
        link = self.link.clone()
        link.write(request)
        buf = bytearray(1)
        if link.read(buf) == 0:
            return None
        return buf[0]

    def status(self) -> dict[str, object]:
        """Query printer online + paper status (blocking).

        ``paper`` is 2 (adequate), 1 (near end), 0 (no paper) or None.
        """
        online_byte = self._query_status(RT_STATUS_ONLINE)
        online = online_byte is not None and not (online_byte & RT_MASK_ONLINE)

        paper: int | None = None
        paper_byte = self._query_status(RT_STATUS_PAPER)
        if paper_byte is not None:
            if (paper_byte & RT_MASK_NOPAPER) == RT_MASK_NOPAPER:
                paper = 0
            elif (paper_byte & RT_MASK_LOWPAPER) == RT_MASK_LOWPAPER:
                paper = 1
            elif (paper_byte & RT_MASK_PAPER) == RT_MASK_PAPER:
                paper = 2
        return {"online": online, "paper": paper}
