from __future__ import annotations

import io
import logging
import multiprocessing
import multiprocessing.context
import tempfile
from functools import lru_cache, partial
from pathlib import Path
from time import perf_counter
from typing import Any, Callable

import numpy as np
from PIL import Image, UnidentifiedImageError

from smutdetect.config import DecodeSettings
from smutdetect.models import ContainerKind, DecodedMedia, DecodedRaster, DecodeFailure, DecodeFailureReason

logger = logging.getLogger(__name__)

# Still-image containers Pillow cannot open without optional plugins.
_PLUGIN_ONLY_FORMATS = {"heif", "avif"}


class DecodeError(RuntimeError):
    """A decode stage gave up; carries the failure reason reported for the file."""

    def __init__(self, reason: DecodeFailureReason, detail: str = "") -> None:
        super().__init__(detail or reason)
        self.reason = reason
        self.detail = detail

    @property
    def failure(self) -> DecodeFailure:
        return DecodeFailure(reason=self.reason, detail=self.detail)


class DecodeBudget:
    """Wall-clock ceiling for one file, checked between pipeline stages.

    Checks are cooperative; decode_isolated() enforces the same ceiling by
    killing the decoder process.
    """

    def __init__(self, max_millis: int, clock: Callable[[], float] = perf_counter) -> None:
        self.max_millis = max_millis
        self._clock = clock
        self._started_at = clock()

    @property
    def elapsed_millis(self) -> float:
        return (self._clock() - self._started_at) * 1000.0

    def check(self, stage: str) -> None:
        elapsed = self.elapsed_millis
        if elapsed > self.max_millis:
            raise DecodeError(
                "resource_limit_exceeded",
                f"time budget of {self.max_millis} ms exceeded at {stage} ({elapsed:.0f} ms)",
            )


def decode(
    data: bytes,
    kind: ContainerKind,
    settings: DecodeSettings,
    *,
    format_name: str | None = None,
    budget: DecodeBudget | None = None,
) -> DecodedMedia | DecodeFailure:
    """Decode an image or sampled video frames into sealed rasters."""

    active_budget = budget or DecodeBudget(settings.max_decode_millis)
    try:
        if len(data) > settings.max_decode_bytes:
            raise DecodeError(
                "resource_limit_exceeded",
                f"{len(data)} bytes exceeds max_decode_bytes={settings.max_decode_bytes}",
            )
        if kind == "image":
            return _decode_image(data, format_name, settings, active_budget)
        if kind == "video":
            return _decode_video(data, format_name, settings, active_budget)
        raise DecodeError("unsupported_variant", f"{kind} content has no raster decoder")
    except DecodeError as exc:
        logger.debug("Decode failed (%s): %s", exc.reason, exc.detail)
        return exc.failure


def decode_isolated(
    data: bytes,
    kind: ContainerKind,
    settings: DecodeSettings,
    *,
    format_name: str | None = None,
    budget: DecodeBudget | None = None,
) -> DecodedMedia | DecodeFailure:
    """Decode in a child process that is killed once the time budget runs out.

    Same contract as decode(). A file that hangs inside a native Pillow or
    cv2 call is still cut off at max_decode_millis.
    """

    active_budget = budget or DecodeBudget(settings.max_decode_millis)
    try:
        if len(data) > settings.max_decode_bytes:
            raise DecodeError(
                "resource_limit_exceeded",
                f"{len(data)} bytes exceeds max_decode_bytes={settings.max_decode_bytes}",
            )
        active_budget.check("decoder start")
        remaining_millis = max(active_budget.max_millis - active_budget.elapsed_millis, 1.0)
        work = partial(_decode_payload, data, kind, settings, format_name, int(remaining_millis))
        payload = run_with_deadline(work, remaining_millis / 1000.0)
    except DecodeError as exc:
        logger.debug("Isolated decode failed (%s): %s", exc.reason, exc.detail)
        return exc.failure

    media_kind, media_format, arrays, source_width, source_height, frame_indices = payload
    return DecodedMedia(
        kind=media_kind,
        format_name=media_format,
        frames=tuple(DecodedRaster.from_array(array) for array in arrays),
        source_width=source_width,
        source_height=source_height,
        frame_indices=frame_indices,
    )


def run_with_deadline(work: Callable[[], Any], timeout_seconds: float) -> Any:
    """Run a picklable callable in a child process and return its result.

    Raises DecodeError with resource_limit_exceeded when the deadline passes
    (the child is killed), with the child's own reason when it raised, and
    with malformed_header when it died without answering.
    """

    context = _process_context()
    receiver, sender = context.Pipe(duplex=False)
    process = context.Process(target=_run_child, args=(work, sender), daemon=True)
    process.start()
    sender.close()
    try:
        if not receiver.poll(timeout_seconds):
            process.kill()
            process.join()
            raise DecodeError(
                "resource_limit_exceeded",
                f"decoder process terminated after {timeout_seconds * 1000:.0f} ms",
            )
        try:
            status, value = receiver.recv()
        except EOFError:
            process.join()
            raise DecodeError("malformed_header", f"decoder process exited with code {process.exitcode}") from None
    finally:
        receiver.close()
        if process.is_alive():
            process.kill()
        process.join()

    if status == "error":
        reason, detail = value
        raise DecodeError(reason, detail)
    return value


@lru_cache(maxsize=1)
def _process_context() -> multiprocessing.context.BaseContext:
    if "forkserver" in multiprocessing.get_all_start_methods():
        context = multiprocessing.get_context("forkserver")
        context.set_forkserver_preload([__name__, "cv2"])
        return context
    return multiprocessing.get_context("spawn")


def _run_child(work: Callable[[], Any], sender: Any) -> None:
    try:
        result = ("ok", work())
    except DecodeError as exc:
        result = ("error", (exc.reason, exc.detail))
    except MemoryError:
        result = ("error", ("resource_limit_exceeded", "out of memory in decoder process"))
    except Exception as exc:
        result = ("error", ("malformed_header", f"{type(exc).__name__}: {exc}"))
    try:
        sender.send(result)
    finally:
        sender.close()


def _decode_payload(
    data: bytes,
    kind: ContainerKind,
    settings: DecodeSettings,
    format_name: str | None,
    max_millis: int,
) -> tuple[Any, ...]:
    decoded = decode(data, kind, settings, format_name=format_name, budget=DecodeBudget(max_millis))
    if isinstance(decoded, DecodeFailure):
        raise DecodeError(decoded.reason, decoded.detail)
    # Plain arrays cross the pipe; the parent re-seals them as rasters.
    return (
        decoded.kind,
        decoded.format_name,
        [frame.pixels for frame in decoded.frames],
        decoded.source_width,
        decoded.source_height,
        decoded.frame_indices,
    )


def _decode_image(
    data: bytes,
    format_name: str | None,
    settings: DecodeSettings,
    budget: DecodeBudget,
) -> DecodedMedia:
    limit = settings.max_raster_dimension
    try:
        with Image.open(io.BytesIO(data)) as image:
            budget.check("image header")
            source_width, source_height = image.size
            if source_width <= 0 or source_height <= 0:
                raise DecodeError("malformed_header", f"declared size {source_width}x{source_height}")
            if source_width * source_height * 4 > settings.max_decode_bytes:
                raise DecodeError(
                    "resource_limit_exceeded",
                    f"{source_width}x{source_height} raster exceeds max_decode_bytes={settings.max_decode_bytes}",
                )

            # JPEG can decode at a reduced scale directly; other formats ignore this.
            image.draft("RGB", (limit, limit))
            image.load()
            budget.check("image pixels")
            array = np.asarray(image.convert("RGB"), dtype=np.uint8)
    except DecodeError:
        raise
    except Image.DecompressionBombError as exc:
        raise DecodeError("resource_limit_exceeded", str(exc)) from exc
    except MemoryError as exc:
        raise DecodeError("resource_limit_exceeded", "out of memory while decoding image") from exc
    except Exception as exc:
        raise DecodeError(_classify_image_error(exc, format_name), f"{type(exc).__name__}: {exc}") from exc

    import cv2

    resized = _resize_to_limit(array, max_dimension=limit, cv2_module=cv2)
    budget.check("image resize")
    return DecodedMedia(
        kind="image",
        format_name=format_name,
        frames=(DecodedRaster.from_array(resized),),
        source_width=source_width,
        source_height=source_height,
        frame_indices=(0,),
    )


def _classify_image_error(exc: BaseException, format_name: str | None) -> DecodeFailureReason:
    if isinstance(exc, UnidentifiedImageError):
        return "unsupported_variant" if format_name in _PLUGIN_ONLY_FORMATS else "malformed_header"
    if isinstance(exc, EOFError):
        return "truncated"
    if isinstance(exc, OSError):
        message = str(exc).lower()
        if "truncated" in message or "premature end" in message:
            return "truncated"
        if "not supported" in message or "unsupported" in message or "not available" in message:
            return "unsupported_variant"
        return "malformed_header"
    if isinstance(exc, NotImplementedError):
        return "unsupported_variant"
    if isinstance(exc, ValueError) and "conversion" in str(exc).lower():
        return "unsupported_variant"
    # SyntaxError, struct.error, IndexError and friends all mean unparseable structure.
    return "malformed_header"


def _decode_video(
    data: bytes,
    format_name: str | None,
    settings: DecodeSettings,
    budget: DecodeBudget,
    cv2_module: Any | None = None,
) -> DecodedMedia:
    cv2 = cv2_module
    if cv2 is None:
        import cv2

    # VideoCapture only reads from a path, so the bytes are staged per call.
    with tempfile.NamedTemporaryFile(suffix=f".{format_name or 'bin'}", delete=False) as handle:
        handle.write(data)
        staged_path = Path(handle.name)

    try:
        capture = cv2.VideoCapture(str(staged_path))
        if not capture.isOpened():
            raise DecodeError("unsupported_variant", f"no video backend could open {format_name or 'stream'}")
        try:
            budget.check("video open")
            frame_count = int(capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
            frames, indices = _read_sampled_frames(
                capture,
                frame_count=frame_count,
                sample_count=settings.video_frame_sample_count,
                max_dimension=settings.max_raster_dimension,
                max_frame_bytes=settings.max_decode_bytes,
                budget=budget,
                cv2_module=cv2,
            )
            source_width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
            source_height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        finally:
            capture.release()
    except DecodeError:
        raise
    except MemoryError as exc:
        raise DecodeError("resource_limit_exceeded", "out of memory while decoding video") from exc
    except Exception as exc:
        raise DecodeError("malformed_header", f"{type(exc).__name__}: {exc}") from exc
    finally:
        staged_path.unlink(missing_ok=True)

    if not frames:
        raise DecodeError("truncated", f"no decodable frames among {frame_count} declared")

    return DecodedMedia(
        kind="video",
        format_name=format_name,
        frames=tuple(frames),
        source_width=source_width or frames[0].width,
        source_height=source_height or frames[0].height,
        frame_indices=tuple(indices),
    )


def _sample_frame_indices(frame_count: int, sample_count: int) -> list[int]:
    """Pick evenly spaced frame indices, centred inside equal-length spans."""

    if frame_count <= 0 or sample_count <= 0:
        return []
    count = min(sample_count, frame_count)
    indices = [int(((slot + 0.5) * frame_count) // count) for slot in range(count)]
    return sorted(set(min(index, frame_count - 1) for index in indices))


def _read_sampled_frames(
    capture: Any,
    *,
    frame_count: int,
    sample_count: int,
    max_dimension: int,
    max_frame_bytes: int,
    budget: DecodeBudget,
    cv2_module: Any,
) -> tuple[list[DecodedRaster], list[int]]:
    frames: list[DecodedRaster] = []
    indices: list[int] = []

    def _accept(frame: Any, index: int) -> None:
        height, width = frame.shape[:2]
        if width * height * 4 > max_frame_bytes:
            raise DecodeError(
                "resource_limit_exceeded",
                f"{width}x{height} frame exceeds max_decode_bytes={max_frame_bytes}",
            )
        rgb = cv2_module.cvtColor(frame, cv2_module.COLOR_BGR2RGB)
        frames.append(DecodedRaster.from_array(_resize_to_limit(rgb, max_dimension, cv2_module)))
        indices.append(index)

    if frame_count > 0:
        for index in _sample_frame_indices(frame_count, sample_count):
            budget.check(f"frame {index}")
            capture.set(cv2_module.CAP_PROP_POS_FRAMES, index)
            ok, frame = capture.read()
            if not ok or frame is None:
                continue
            _accept(frame, index)
        return frames, indices

    # Streams without a frame count (some MPEG/FLV) fall back to the leading frames.
    index = 0
    while len(frames) < sample_count:
        budget.check(f"frame {index}")
        ok, frame = capture.read()
        if not ok or frame is None:
            break
        _accept(frame, index)
        index += 1
    return frames, indices


def _resize_to_limit(array: np.ndarray, max_dimension: int, cv2_module: Any) -> np.ndarray:
    if max_dimension <= 0:
        return array

    height, width = array.shape[:2]
    longest = max(height, width)
    if longest <= max_dimension:
        return array

    scale = max_dimension / float(longest)
    target_width = max(int(round(width * scale)), 1)
    target_height = max(int(round(height * scale)), 1)
    return cv2_module.resize(array, (target_width, target_height), interpolation=cv2_module.INTER_AREA)
