from __future__ import annotations

import io
import os
import time
from functools import partial

import numpy as np
import pytest
from PIL import Image, UnidentifiedImageError

from smutdetect.config import DecodeSettings
from smutdetect.ingest.decode import (
    DecodeBudget,
    DecodeError,
    _classify_image_error,
    _decode_video,
    _resize_to_limit,
    _sample_frame_indices,
    decode,
    decode_isolated,
    run_with_deadline,
)
from smutdetect.models import DecodedMedia, DecodedRaster, DecodeFailure


def _png_bytes(array: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(array).save(buffer, format="PNG")
    return buffer.getvalue()


def _solid_png(width: int = 64, height: int = 64, color: tuple[int, int, int] = (0, 0, 255)) -> bytes:
    return _png_bytes(np.full((height, width, 3), color, dtype=np.uint8))


class _FakeCapture:
    def __init__(self, frames: list[np.ndarray], *, opened: bool = True, report_count: bool = True) -> None:
        self.frames = frames
        self.opened = opened
        self.report_count = report_count
        self.position = 0
        self.released = False

    def isOpened(self) -> bool:
        return self.opened

    def get(self, prop: int) -> float:
        if prop == _FakeCv2.CAP_PROP_FRAME_COUNT:
            return float(len(self.frames)) if self.report_count else 0.0
        if prop == _FakeCv2.CAP_PROP_FRAME_WIDTH:
            return float(self.frames[0].shape[1]) if self.frames else 0.0
        if prop == _FakeCv2.CAP_PROP_FRAME_HEIGHT:
            return float(self.frames[0].shape[0]) if self.frames else 0.0
        return 0.0

    def set(self, prop: int, value: float) -> bool:
        if prop == _FakeCv2.CAP_PROP_POS_FRAMES:
            self.position = int(value)
        return True

    def read(self):
        if self.position >= len(self.frames):
            return False, None
        frame = self.frames[self.position]
        self.position += 1
        return True, frame

    def release(self) -> None:
        self.released = True


class _FakeCv2:
    CAP_PROP_POS_FRAMES = 1
    CAP_PROP_FRAME_WIDTH = 3
    CAP_PROP_FRAME_HEIGHT = 4
    CAP_PROP_FRAME_COUNT = 7
    COLOR_BGR2RGB = 4
    INTER_AREA = 3

    def __init__(self, capture: _FakeCapture) -> None:
        self.capture = capture
        self.opened_paths: list[str] = []
        self.resized_with: tuple[tuple[int, int], int] | None = None

    def VideoCapture(self, path: str) -> _FakeCapture:
        self.opened_paths.append(path)
        return self.capture

    def cvtColor(self, frame, code):
        assert code == self.COLOR_BGR2RGB
        return frame[:, :, ::-1]

    def resize(self, frame, dims, interpolation):
        self.resized_with = (dims, interpolation)
        target_w, target_h = dims
        return np.zeros((target_h, target_w, frame.shape[2]), dtype=frame.dtype)


def _bgr_frames(count: int, size: int = 8) -> list[np.ndarray]:
    frames = []
    for index in range(count):
        frame = np.zeros((size, size, 3), dtype=np.uint8)
        frame[:, :, 0] = index
        frames.append(frame)
    return frames


def test_decode_png_returns_sealed_raster() -> None:
    media = decode(_solid_png(40, 20), "image", DecodeSettings(), format_name="png")

    assert isinstance(media, DecodedMedia)
    assert media.kind == "image"
    assert (media.source_width, media.source_height) == (40, 20)
    raster = media.frames[0]
    assert (raster.width, raster.height, raster.channels) == (40, 20, 3)
    assert tuple(raster.pixels[0, 0]) == (0, 0, 255)
    assert not raster.pixels.flags.writeable


def test_decode_downscales_to_max_raster_dimension() -> None:
    media = decode(_solid_png(64, 32), "image", DecodeSettings(max_raster_dimension=16), format_name="png")

    assert isinstance(media, DecodedMedia)
    assert (media.frames[0].width, media.frames[0].height) == (16, 8)
    assert (media.source_width, media.source_height) == (64, 32)


def test_decode_truncated_png_reports_failure() -> None:
    rng = np.random.default_rng(1)
    data = _png_bytes(rng.integers(0, 256, size=(64, 64, 3), dtype=np.uint8))

    result = decode(data[: int(len(data) * 0.6)], "image", DecodeSettings(), format_name="png")

    assert isinstance(result, DecodeFailure)
    assert result.reason in {"truncated", "malformed_header"}


def test_decode_png_signature_without_chunks_is_malformed() -> None:
    result = decode(b"\x89PNG\r\n\x1a\n" + b"\x00" * 32, "image", DecodeSettings(), format_name="png")

    assert isinstance(result, DecodeFailure)
    assert result.reason == "malformed_header"


def test_decode_rejects_input_over_byte_ceiling() -> None:
    result = decode(_solid_png(), "image", DecodeSettings(max_decode_bytes=16), format_name="png")

    assert isinstance(result, DecodeFailure)
    assert result.reason == "resource_limit_exceeded"


def test_decode_rejects_declared_dimensions_over_byte_ceiling() -> None:
    data = _solid_png(64, 64)
    assert len(data) < 4096

    result = decode(data, "image", DecodeSettings(max_decode_bytes=4096), format_name="png")

    assert isinstance(result, DecodeFailure)
    assert result.reason == "resource_limit_exceeded"


def test_decode_stops_when_time_budget_is_spent() -> None:
    ticks = iter(float(second) for second in range(100))
    budget = DecodeBudget(max_millis=10, clock=lambda: next(ticks))

    result = decode(_solid_png(), "image", DecodeSettings(), format_name="png", budget=budget)

    assert isinstance(result, DecodeFailure)
    assert result.reason == "resource_limit_exceeded"
    assert "time budget" in result.detail


def test_decode_has_no_decoder_for_archives() -> None:
    result = decode(b"PK\x03\x04", "archive", DecodeSettings(), format_name="zip")

    assert isinstance(result, DecodeFailure)
    assert result.reason == "unsupported_variant"


def test_run_with_deadline_kills_a_hung_decoder() -> None:
    started = time.perf_counter()

    with pytest.raises(DecodeError) as excinfo:
        run_with_deadline(partial(time.sleep, 30), timeout_seconds=0.5)

    assert excinfo.value.reason == "resource_limit_exceeded"
    assert "terminated" in excinfo.value.detail
    assert time.perf_counter() - started < 15


def test_run_with_deadline_reports_a_crashed_decoder() -> None:
    with pytest.raises(DecodeError) as excinfo:
        run_with_deadline(partial(os._exit, 3), timeout_seconds=30)

    assert excinfo.value.reason == "malformed_header"
    assert "code 3" in excinfo.value.detail


def test_run_with_deadline_relays_child_exceptions() -> None:
    with pytest.raises(DecodeError) as excinfo:
        run_with_deadline(partial(int, "not a number"), timeout_seconds=30)

    assert excinfo.value.reason == "malformed_header"
    assert excinfo.value.detail.startswith("ValueError")


def test_decode_isolated_matches_inline_decode() -> None:
    data = _png_bytes(np.tile(np.arange(48, dtype=np.uint8), (32, 1))[:, :, np.newaxis].repeat(3, axis=2))
    settings = DecodeSettings()

    isolated = decode_isolated(data, "image", settings, format_name="png")
    inline = decode(data, "image", settings, format_name="png")

    assert isinstance(isolated, DecodedMedia)
    assert (isolated.source_width, isolated.source_height) == (48, 32)
    assert isolated.frame_indices == inline.frame_indices
    assert not isolated.frames[0].pixels.flags.writeable
    assert np.array_equal(isolated.frames[0].pixels, inline.frames[0].pixels)


def test_decode_isolated_reports_decoder_failures() -> None:
    data = _solid_png()

    result = decode_isolated(data[:40], "image", DecodeSettings(), format_name="png")

    assert isinstance(result, DecodeFailure)
    assert result == decode(data[:40], "image", DecodeSettings(), format_name="png")


def test_decode_isolated_checks_byte_ceiling_before_starting_a_process() -> None:
    result = decode_isolated(_solid_png(), "image", DecodeSettings(max_decode_bytes=16), format_name="png")

    assert isinstance(result, DecodeFailure)
    assert result.reason == "resource_limit_exceeded"


def test_decode_isolated_with_spent_budget_is_resource_limit() -> None:
    budget = DecodeBudget(1, clock=iter([0.0, 5.0, 5.0, 5.0]).__next__)

    result = decode_isolated(_solid_png(), "image", DecodeSettings(), format_name="png", budget=budget)

    assert isinstance(result, DecodeFailure)
    assert result.reason == "resource_limit_exceeded"


def test_decode_budget_uses_injected_clock() -> None:
    now = [0.0]
    budget = DecodeBudget(max_millis=100, clock=lambda: now[0])

    now[0] = 0.05
    budget.check("fast stage")

    now[0] = 0.5
    with pytest.raises(DecodeError) as excinfo:
        budget.check("slow stage")

    assert excinfo.value.reason == "resource_limit_exceeded"
    assert "slow stage" in excinfo.value.detail


@pytest.mark.parametrize(
    ("frame_count", "sample_count", "expected"),
    [
        (100, 4, [12, 37, 62, 87]),
        (3, 8, [0, 1, 2]),
        (1, 8, [0]),
        (0, 8, []),
        (10, 0, []),
    ],
)
def test_sample_frame_indices_are_evenly_spaced(frame_count: int, sample_count: int, expected: list[int]) -> None:
    assert _sample_frame_indices(frame_count, sample_count) == expected


@pytest.mark.parametrize(
    ("exc", "format_name", "expected"),
    [
        (UnidentifiedImageError("cannot identify image file"), "jpeg", "malformed_header"),
        (UnidentifiedImageError("cannot identify image file"), "heif", "unsupported_variant"),
        (EOFError(), "gif", "truncated"),
        (OSError("image file is truncated (3 bytes not processed)"), "jpeg", "truncated"),
        (OSError("decoder jpeg2k not available"), "jpeg", "unsupported_variant"),
        (OSError("broken data stream"), "png", "malformed_header"),
        (NotImplementedError("unsupported BMP compression"), "bmp", "unsupported_variant"),
        (ValueError("conversion from CMYK;I not supported"), "tiff", "unsupported_variant"),
        (SyntaxError("not a TIFF file"), "tiff", "malformed_header"),
    ],
)
def test_classify_image_error(exc: BaseException, format_name: str, expected: str) -> None:
    assert _classify_image_error(exc, format_name) == expected


def test_decode_video_samples_frames_and_converts_to_rgb() -> None:
    capture = _FakeCapture(_bgr_frames(10))
    fake_cv2 = _FakeCv2(capture)

    media = _decode_video(
        b"not really a video",
        "mp4",
        DecodeSettings(video_frame_sample_count=2),
        DecodeBudget(10_000),
        cv2_module=fake_cv2,
    )

    assert media.kind == "video"
    assert media.frame_indices == (2, 7)
    assert [int(frame.pixels[0, 0, 2]) for frame in media.frames] == [2, 7]
    assert (media.source_width, media.source_height) == (8, 8)
    assert capture.released
    assert fake_cv2.opened_paths[0].endswith(".mp4")


def test_decode_video_without_frame_count_reads_leading_frames() -> None:
    capture = _FakeCapture(_bgr_frames(5), report_count=False)

    media = _decode_video(
        b"stream",
        "flv",
        DecodeSettings(video_frame_sample_count=3),
        DecodeBudget(10_000),
        cv2_module=_FakeCv2(capture),
    )

    assert media.frame_indices == (0, 1, 2)


def test_decode_video_unopenable_stream_is_unsupported() -> None:
    capture = _FakeCapture([], opened=False)

    with pytest.raises(DecodeError) as excinfo:
        _decode_video(b"x", "asf", DecodeSettings(), DecodeBudget(10_000), cv2_module=_FakeCv2(capture))

    assert excinfo.value.reason == "unsupported_variant"


def test_decode_video_with_no_readable_frames_is_truncated() -> None:
    capture = _FakeCapture([], report_count=False)

    with pytest.raises(DecodeError) as excinfo:
        _decode_video(b"x", "mp4", DecodeSettings(), DecodeBudget(10_000), cv2_module=_FakeCv2(capture))

    assert excinfo.value.reason == "truncated"
    assert capture.released


def test_resize_to_limit_skips_small_frames() -> None:
    frame = np.zeros((100, 200, 3), dtype=np.uint8)
    fake_cv2 = _FakeCv2(_FakeCapture([]))

    resized = _resize_to_limit(frame, max_dimension=320, cv2_module=fake_cv2)

    assert resized is frame
    assert fake_cv2.resized_with is None


def test_resize_to_limit_keeps_aspect_ratio() -> None:
    frame = np.zeros((100, 800, 3), dtype=np.uint8)
    fake_cv2 = _FakeCv2(_FakeCapture([]))

    resized = _resize_to_limit(frame, max_dimension=320, cv2_module=fake_cv2)

    assert resized.shape[:2] == (40, 320)
    assert fake_cv2.resized_with == ((320, 40), _FakeCv2.INTER_AREA)


def test_decoded_raster_rejects_writable_or_mismatched_buffers() -> None:
    writable = np.zeros((4, 4, 3), dtype=np.uint8)
    with pytest.raises(ValueError, match="read-only"):
        DecodedRaster(width=4, height=4, channels=3, pixels=writable)

    sealed = DecodedRaster.from_array(writable).pixels
    with pytest.raises(ValueError, match="does not match"):
        DecodedRaster(width=8, height=4, channels=3, pixels=sealed)
