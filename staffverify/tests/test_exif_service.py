"""EXIF GPS extraction and metadata redaction."""

import io

import pytest
from PIL import Image

from staffverify.repositories.base import GpsFix
from staffverify.services.exif_service import (
    RedactionError,
    extract_gps,
    jpeg_metadata_markers,
    redact,
)
from staffverify.tests.conftest import make_jpeg, make_png


class TestExtractGps:
    def test_gps_round_trip(self):
        fix = extract_gps(make_jpeg(gps=(40.7128, -74.0060)))
        assert fix == GpsFix(lat=40.7128, lng=-74.006, source="exif")

    def test_southern_eastern_hemisphere(self):
        fix = extract_gps(make_jpeg(gps=(-33.8688, 151.2093)))
        assert fix is not None
        assert fix.lat == pytest.approx(-33.8688, abs=1e-6)
        assert fix.lng == pytest.approx(151.2093, abs=1e-6)

    def test_no_gps_tags_returns_none(self):
        assert extract_gps(make_jpeg()) is None

    def test_png_without_exif_returns_none(self):
        assert extract_gps(make_png()) is None

    def test_garbage_bytes_never_raise(self):
        assert extract_gps(b"definitely not an image") is None

    def test_empty_bytes_never_raise(self):
        assert extract_gps(b"") is None


class TestRedact:
    def test_source_carries_metadata(self):
        source = make_jpeg(gps=(40.7128, -74.0060), description="store selfie")
        assert b"Exif" in source
        assert 0xE1 in jpeg_metadata_markers(source)

    def test_redacted_has_no_metadata_segments(self):
        source = make_jpeg(gps=(40.7128, -74.0060), description="store selfie")
        out = redact(source)
        assert jpeg_metadata_markers(out) == []
        assert b"Exif" not in out
        assert b"store selfie" not in out
        assert extract_gps(out) is None

    def test_redacted_without_source_metadata(self):
        out = redact(make_jpeg())
        assert jpeg_metadata_markers(out) == []
        assert b"Exif" not in out

    def test_redacted_is_a_decodable_jpeg_of_same_size(self):
        out = redact(make_jpeg(size=(40, 30)))
        with Image.open(io.BytesIO(out)) as img:
            assert img.format == "JPEG"
            assert img.size == (40, 30)

    def test_png_with_alpha_is_reencoded_as_jpeg(self):
        out = redact(make_png())
        assert out[:2] == b"\xff\xd8"
        assert jpeg_metadata_markers(out) == []

    def test_redaction_is_deterministic(self):
        source = make_jpeg(gps=(1.0, 2.0))
        assert redact(source) == redact(source)

    def test_unreadable_image_raises(self):
        with pytest.raises(RedactionError):
            redact(b"not an image at all")


class TestJpegMarkers:
    def test_rejects_non_jpeg(self):
        with pytest.raises(RedactionError):
            jpeg_metadata_markers(make_png())

    def test_detects_comment_segment(self):
        # SOI, COM("hi"), EOI
        data = b"\xff\xd8" + b"\xff\xfe\x00\x04hi" + b"\xff\xd9"
        assert jpeg_metadata_markers(data) == [0xFE]
