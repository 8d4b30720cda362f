from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import numpy as np

ContainerKind = Literal["image", "video", "archive", "irrelevant"]
VerdictOutcome = Literal["clear", "suspect", "known"]
VerdictPriority = Literal["normal", "high"]
ReferenceCategory = Literal["known_bad", "known_clear"]
HashKind = Literal["md5", "sha1", "sha256", "phash"]
DecodeFailureReason = Literal[
    "unsupported_variant",
    "truncated",
    "malformed_header",
    "resource_limit_exceeded",
]

CATEGORY_SEVERITY: dict[str, int] = {"known_bad": 2, "known_clear": 1}


@dataclass(frozen=True, slots=True)
class CandidateFile:
    """One file presented by the host: identity plus raw bytes.

    `data` may be a capped prefix of a larger file; `total_size` then holds the
    size the host reported.
    """

    path: str
    declared_name: str
    data: bytes
    inode: int | None = None
    offset: int | None = None
    container: dict[str, str] = field(default_factory=dict)
    total_size: int | None = None

    @property
    def size(self) -> int:
        if self.total_size is not None:
            return self.total_size
        return len(self.data)


@dataclass(frozen=True, slots=True)
class ContainerSignature:
    kind: ContainerKind
    format_name: str | None = None


@dataclass(frozen=True, slots=True)
class DecodedRaster:
    """An RGB(-like) pixel grid whose shape always matches its buffer."""

    width: int
    height: int
    channels: int
    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0 or self.channels <= 0:
            raise ValueError(f"Raster dimensions must be positive, got {self.width}x{self.height}x{self.channels}.")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Raster pixels must be uint8, got {self.pixels.dtype}.")
        expected_shape = (self.height, self.width, self.channels)
        if self.pixels.shape != expected_shape:
            raise ValueError(f"Raster buffer shape {self.pixels.shape} does not match {expected_shape}.")
        if self.pixels.flags.writeable:
            raise ValueError("Raster pixels must be read-only once handed downstream.")

    @classmethod
    def from_array(cls, array: np.ndarray) -> DecodedRaster:
        """Copy an HxWxC uint8 array into a sealed raster."""

        pixels = np.ascontiguousarray(array, dtype=np.uint8).copy()
        if pixels.ndim == 2:
            pixels = pixels[:, :, np.newaxis]
        pixels.setflags(write=False)
        height, width, channels = pixels.shape
        return cls(width=width, height=height, channels=channels, pixels=pixels)


@dataclass(frozen=True, slots=True)
class DecodedMedia:
    kind: ContainerKind
    format_name: str | None
    frames: tuple[DecodedRaster, ...]
    source_width: int
    source_height: int
    frame_indices: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class DecodeFailure:
    reason: DecodeFailureReason
    detail: str = ""

    @property
    def annotation(self) -> str:
        return f"decode_failure:{self.reason}"


@dataclass(frozen=True, slots=True)
class ContentHashes:
    md5: str
    sha1: str
    sha256: str
    perceptual: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class HashMatch:
    """Outcome of a reference-set lookup; a miss has no category."""

    category: ReferenceCategory | None = None
    hash_kind: HashKind | None = None
    distance: int = 0
    hash_bits: int = 64
    reference_hash: str | None = None
    frame_index: int | None = None

    @classmethod
    def miss(cls) -> HashMatch:
        return cls()

    @property
    def hit(self) -> bool:
        return self.category is not None

    @property
    def exact(self) -> bool:
        return self.hit and self.hash_kind != "phash"

    @property
    def normalized_distance(self) -> float:
        if self.hash_bits <= 0:
            return 1.0
        return min(1.0, max(0.0, self.distance / self.hash_bits))


@dataclass(frozen=True, slots=True)
class FeatureVector:
    """Named raster features, each in [0, 1]."""

    values: dict[str, float]
    frame_index: int = 0


@dataclass(frozen=True, slots=True)
class Signal:
    name: str
    value: float
    weight: float


@dataclass(frozen=True, slots=True)
class Verdict:
    outcome: VerdictOutcome
    confidence: float
    signals: tuple[Signal, ...] = ()
    annotations: tuple[str, ...] = ()
    priority: VerdictPriority = "normal"
    score: float | None = None


@dataclass(slots=True)
class ResultRecord:
    """Everything the host needs to persist and later audit one decision."""

    path: str
    declared_name: str
    inode: int | None
    offset: int | None
    size_bytes: int
    container: dict[str, str]
    container_kind: ContainerKind
    format_name: str | None
    md5: str
    sha1: str
    sha256: str
    perceptual_hashes: list[str]
    outcome: VerdictOutcome
    confidence: float
    priority: VerdictPriority
    score: float | None
    signals: list[dict[str, Any]]
    annotations: list[str]
    frame_count: int = 0
    decode_failure: str | None = None
    decode_failure_detail: str | None = None
