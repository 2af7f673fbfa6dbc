"""EXIF GPS extraction and metadata redaction for verification photos.

Extraction is best-effort and never raises. Redaction re-encodes the pixels
as a fresh JPEG and then checks the output carries no metadata segment.
"""
import io
import logging
import math
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from staffverify.repositories.base import GpsFix

logger = logging.getLogger(__name__)

# EXIF pointer to the GPS IFD and the GPS tags we read from it
_GPS_IFD = 0x8825
_GPS_LATITUDE_REF = 1
_GPS_LATITUDE = 2
_GPS_LONGITUDE_REF = 3
_GPS_LONGITUDE = 4

# JPEG markers that may carry metadata: APP1..APP15 and COM.
# APP0 (JFIF) only holds density/version and is always written by the encoder.
_METADATA_MARKERS = frozenset(range(0xE1, 0xF0)) | {0xFE}
_SOI = 0xD8
_SOS = 0xDA
_EOI = 0xD9


class RedactionError(Exception):
    """The image could not be re-encoded without metadata."""


def _to_degrees(value) -> float:
    """Convert an EXIF (degrees, minutes, seconds) triple to decimal degrees."""
    if isinstance(value, (int, float)):
        return float(value)
    parts = [float(v) for v in value]
    while len(parts) < 3:
        parts.append(0.0)
    degrees, minutes, seconds = parts[:3]
    return degrees + minutes / 60.0 + seconds / 3600.0


def extract_gps(data: bytes) -> Optional[GpsFix]:
    """Return the photo's EXIF GPS fix, or None if absent or unreadable."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            gps = img.getexif().get_ifd(_GPS_IFD)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        logger.warning("EXIF parse failed: %s", e)
        return None

    if not gps or _GPS_LATITUDE not in gps or _GPS_LONGITUDE not in gps:
        return None

    try:
        lat = _to_degrees(gps[_GPS_LATITUDE])
        lng = _to_degrees(gps[_GPS_LONGITUDE])
    except (TypeError, ValueError, ZeroDivisionError) as e:
        logger.warning("EXIF GPS tags malformed: %s", e)
        return None

    if str(gps.get(_GPS_LATITUDE_REF, "N")).strip().upper().startswith("S"):
        lat = -lat
    if str(gps.get(_GPS_LONGITUDE_REF, "E")).strip().upper().startswith("W"):
        lng = -lng

    if not (math.isfinite(lat) and math.isfinite(lng)):
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        logger.warning("EXIF GPS out of range: lat=%s lng=%s", lat, lng)
        return None

    return GpsFix(lat=round(lat, 6), lng=round(lng, 6), source="exif")


def jpeg_metadata_markers(data: bytes) -> list[int]:
    """Return the metadata-bearing marker codes present in a JPEG header."""
    if len(data) < 4 or data[0] != 0xFF or data[1] != _SOI:
        raise RedactionError("Not a JPEG stream")

    found = []
    pos = 2
    while pos + 4 <= len(data):
        if data[pos] != 0xFF:
            raise RedactionError(f"Corrupt JPEG marker at offset {pos}")
        marker = data[pos + 1]
        if marker == 0xFF:  # fill byte
            pos += 1
            continue
        if marker in (_SOS, _EOI):
            break
        length = int.from_bytes(data[pos + 2:pos + 4], "big")
        if marker in _METADATA_MARKERS:
            found.append(marker)
        pos += 2 + length
    return found


def redact(data: bytes, quality: int = 90) -> bytes:
    """Re-encode ``data`` as a JPEG with every metadata segment removed.

    Orientation is applied to the pixels first so stripping the EXIF
    orientation tag does not rotate the photo.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise RedactionError(f"Unreadable image: {e}") from e

    rgb.info.clear()
    out = io.BytesIO()
    rgb.save(out, format="JPEG", quality=quality, optimize=True)
    redacted = out.getvalue()

    leftover = jpeg_metadata_markers(redacted)
    if leftover:
        raise RedactionError(
            "Metadata segments survived re-encoding: "
            + ", ".join(f"0xFF{m:02X}" for m in leftover)
        )
    return redacted
