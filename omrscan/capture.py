"""Raw captures handed over by the client-side capture subsystem."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .errors import CaptureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class RawCapture:
    """A single photographed or scanned sheet.

    ``pixels`` is an 8-bit array with 1 (grey), 3 (BGR) or 4 (BGRA) channels.
    The array is made read-only on construction; every processing step works
    on copies.
    """

    pixels: np.ndarray = field(repr=False)
    device_resolution: Optional[Tuple[int, int]] = None
    source: Optional[str] = None

    def __post_init__(self) -> None:
        pixels = self.pixels
        if pixels is None or not isinstance(pixels, np.ndarray) or pixels.size == 0:
            raise CaptureError("Capture contains no pixel data")
        if pixels.dtype != np.uint8:
            raise CaptureError(f"Capture must be 8-bit, got {pixels.dtype}")
        if pixels.ndim not in (2, 3) or (pixels.ndim == 3 and pixels.shape[2] not in (1, 3, 4)):
            raise CaptureError(f"Unsupported capture shape {pixels.shape}")
        pixels = np.array(pixels, copy=True)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return 1 if self.pixels.ndim == 2 else int(self.pixels.shape[2])

    def bgr(self) -> np.ndarray:
        if self.channels == 1:
            return cv2.cvtColor(self.pixels.reshape(self.height, self.width), cv2.COLOR_GRAY2BGR)
        if self.channels == 4:
            return cv2.cvtColor(self.pixels, cv2.COLOR_BGRA2BGR)
        return self.pixels.copy()

    def gray(self) -> np.ndarray:
        if self.channels == 1:
            return self.pixels.reshape(self.height, self.width).copy()
        if self.channels == 4:
            return cv2.cvtColor(self.pixels, cv2.COLOR_BGRA2GRAY)
        return cv2.cvtColor(self.pixels, cv2.COLOR_BGR2GRAY)

    def downscaled(self, max_dimension: int) -> "RawCapture":
        """Return a copy whose longest side is at most ``max_dimension``."""

        longest = max(self.width, self.height)
        if max_dimension <= 0 or longest <= max_dimension:
            return self

        scale = max_dimension / float(longest)
        size = (max(1, int(round(self.width * scale))), max(1, int(round(self.height * scale))))
        resized = cv2.resize(self.pixels, size, interpolation=cv2.INTER_AREA)
        logger.debug("Downscaled capture from %dx%d to %dx%d", self.width, self.height, *size)
        return RawCapture(resized, device_resolution=self.device_resolution, source=self.source)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RawCapture":
        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if image is None:
            raise CaptureError(f"Unable to read image: {path}")
        return cls(image, device_resolution=(image.shape[1], image.shape[0]), source=str(path))

    @classmethod
    def from_bytes(cls, data: bytes, source: Optional[str] = None) -> "RawCapture":
        """Decode an encoded image (JPEG, PNG, ...)."""

        buffer = np.frombuffer(data, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR) if buffer.size else None
        if image is None:
            raise CaptureError("Unable to decode image bytes")
        return cls(image, device_resolution=(image.shape[1], image.shape[0]), source=source)

    @classmethod
    def from_buffer(
        cls,
        data: Union[bytes, bytearray, memoryview, np.ndarray],
        width: int,
        height: int,
        channels: int,
        channel_order: str = "bgr",
        device_resolution: Optional[Tuple[int, int]] = None,
    ) -> "RawCapture":
        """Wrap a raw, row-major 8-bit pixel buffer (for example RGBA canvas data)."""

        flat = np.frombuffer(data, dtype=np.uint8) if not isinstance(data, np.ndarray) else data.ravel()
        expected = width * height * channels
        if flat.size != expected:
            raise CaptureError(
                f"Pixel buffer holds {flat.size} bytes, expected {expected} for {width}x{height}x{channels}"
            )

        pixels = flat.reshape((height, width) if channels == 1 else (height, width, channels))
        order = channel_order.lower()
        if channels == 3 and order == "rgb":
            pixels = cv2.cvtColor(pixels, cv2.COLOR_RGB2BGR)
        elif channels == 4 and order == "rgba":
            pixels = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGRA)
        elif order not in ("bgr", "bgra", "gray", "rgb", "rgba"):
            raise CaptureError(f"Unknown channel order {channel_order!r}")
        return cls(pixels, device_resolution=device_resolution or (width, height))
