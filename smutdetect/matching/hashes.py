from __future__ import annotations

import hashlib

import imagehash
from PIL import Image

from smutdetect.models import ContentHashes, DecodedMedia, DecodedRaster

PHASH_SIZE = 8
PHASH_BITS = PHASH_SIZE * PHASH_SIZE


def compute_digests(data: bytes) -> tuple[str, str, str]:
    """Return (md5, sha1, sha256) hex digests of the raw bytes."""

    md5 = hashlib.md5(data, usedforsecurity=False)
    sha1 = hashlib.sha1(data, usedforsecurity=False)
    sha256 = hashlib.sha256(data)
    return md5.hexdigest(), sha1.hexdigest(), sha256.hexdigest()


def perceptual_hash(raster: DecodedRaster) -> str:
    """64-bit DCT perceptual hash of one raster, as 16 hex characters."""

    channels = raster.pixels if raster.channels != 1 else raster.pixels[:, :, 0]
    image = Image.fromarray(channels)
    return str(imagehash.phash(image, hash_size=PHASH_SIZE))


def compute_content_hashes(data: bytes, media: DecodedMedia | None = None) -> ContentHashes:
    md5, sha1, sha256 = compute_digests(data)
    perceptual: tuple[str, ...] = ()
    if media is not None:
        perceptual = tuple(perceptual_hash(frame) for frame in media.frames)
    return ContentHashes(md5=md5, sha1=sha1, sha256=sha256, perceptual=perceptual)
