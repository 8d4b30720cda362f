from __future__ import annotations

import logging

from smutdetect.models import ContainerKind, ContainerSignature

logger = logging.getLogger(__name__)

SNIFF_BYTES = 4096

_IRRELEVANT = ContainerSignature(kind="irrelevant")

# ISO base media brands that carry still images rather than movies.
_IMAGE_FTYP_BRANDS = {b"heic", b"heix", b"hevc", b"heim", b"heis", b"mif1", b"msf1", b"avif", b"avis"}

# ISO base media brands for audio-only files.
_AUDIO_FTYP_BRANDS = {b"M4A ", b"M4B ", b"M4P ", b"F4A ", b"F4B "}


# --- sniffers -------------------------------------------------------------------


def _is_jpeg(head: bytes) -> bool:
    return head.startswith(b"\xFF\xD8\xFF")


def _is_png(head: bytes) -> bool:
    return head.startswith(b"\x89PNG\r\n\x1a\n")


def _is_gif(head: bytes) -> bool:
    return head.startswith(b"GIF87a") or head.startswith(b"GIF89a")


def _is_bmp(head: bytes) -> bool:
    return head.startswith(b"BM") and len(head) >= 26 and head[14:18] in (
        b"\x0c\x00\x00\x00",
        b"\x28\x00\x00\x00",
        b"\x38\x00\x00\x00",
        b"\x40\x00\x00\x00",
        b"\x6c\x00\x00\x00",
        b"\x7c\x00\x00\x00",
    )


def _is_tiff(head: bytes) -> bool:
    return head.startswith(b"II*\x00") or head.startswith(b"MM\x00*")


def _is_riff(head: bytes, fourcc: bytes) -> bool:
    return head[:4] == b"RIFF" and len(head) >= 12 and head[8:12] == fourcc


def _ftyp_brand(head: bytes) -> bytes | None:
    if len(head) >= 12 and head[4:8] == b"ftyp":
        return head[8:12]
    return None


def _is_matroska(head: bytes) -> bool:
    return head.startswith(b"\x1A\x45\xDF\xA3")


def _is_flv(head: bytes) -> bool:
    return head.startswith(b"FLV\x01")


def _is_mpeg(head: bytes) -> bool:
    return head.startswith(b"\x00\x00\x01\xBA") or head.startswith(b"\x00\x00\x01\xB3")


def _is_mpeg_ts(head: bytes) -> bool:
    return len(head) >= 377 and head[0] == 0x47 and head[188] == 0x47 and head[376] == 0x47


def _is_asf(head: bytes) -> bool:
    return head.startswith(b"\x30\x26\xB2\x75\x8E\x66\xCF\x11")


def _is_quicktime(head: bytes) -> bool:
    return len(head) >= 8 and head[4:8] in (b"moov", b"mdat", b"wide", b"free", b"skip")


def _is_zip(head: bytes) -> bool:
    return head.startswith(b"PK\x03\x04") or head.startswith(b"PK\x05\x06")


def _is_7z(head: bytes) -> bool:
    return head.startswith(b"7z\xBC\xAF\x27\x1C")


def _is_rar(head: bytes) -> bool:
    return head.startswith(b"Rar!\x1A\x07\x00") or head.startswith(b"Rar!\x1A\x07\x01\x00")


def _is_gz(head: bytes) -> bool:
    return head.startswith(b"\x1F\x8B\x08")


def _is_bz2(head: bytes) -> bool:
    return head.startswith(b"BZh")


def _is_xz(head: bytes) -> bool:
    return head.startswith(b"\xFD7zXZ\x00")


def _is_tar(head: bytes) -> bool:
    return len(head) >= 262 and head[257:262] == b"ustar"


def _sniff(head: bytes) -> ContainerSignature:
    if _is_jpeg(head):
        return ContainerSignature("image", "jpeg")
    if _is_png(head):
        return ContainerSignature("image", "png")
    if _is_gif(head):
        return ContainerSignature("image", "gif")
    if _is_bmp(head):
        return ContainerSignature("image", "bmp")
    if _is_tiff(head):
        return ContainerSignature("image", "tiff")
    if _is_riff(head, b"WEBP"):
        return ContainerSignature("image", "webp")

    brand = _ftyp_brand(head)
    if brand is not None:
        if brand in _IMAGE_FTYP_BRANDS:
            return ContainerSignature("image", "avif" if brand.startswith(b"avi") else "heif")
        if brand in _AUDIO_FTYP_BRANDS:
            return _IRRELEVANT
        if brand.startswith(b"qt"):
            return ContainerSignature("video", "quicktime")
        if brand.startswith(b"3g"):
            return ContainerSignature("video", "3gp")
        return ContainerSignature("video", "mp4")
    if _is_riff(head, b"AVI "):
        return ContainerSignature("video", "avi")
    if _is_matroska(head):
        return ContainerSignature("video", "webm" if b"webm" in head[:64] else "matroska")
    if _is_flv(head):
        return ContainerSignature("video", "flv")
    if _is_asf(head):
        return ContainerSignature("video", "asf")
    if _is_mpeg(head):
        return ContainerSignature("video", "mpeg")
    if _is_mpeg_ts(head):
        return ContainerSignature("video", "mpegts")
    if _is_quicktime(head):
        return ContainerSignature("video", "quicktime")

    if _is_zip(head):
        return ContainerSignature("archive", "zip")
    if _is_7z(head):
        return ContainerSignature("archive", "7z")
    if _is_rar(head):
        return ContainerSignature("archive", "rar")
    if _is_gz(head):
        return ContainerSignature("archive", "gzip")
    if _is_bz2(head):
        return ContainerSignature("archive", "bzip2")
    if _is_xz(head):
        return ContainerSignature("archive", "xz")
    if _is_tar(head):
        return ContainerSignature("archive", "tar")

    return _IRRELEVANT


def sniff_signature(data: bytes, declared_name: str = "") -> ContainerSignature:
    """Identify the container from its leading bytes; never raises.

    The declared name is accepted for logging only: extensions on recovered
    files are routinely wrong or stripped, so they never decide the outcome.
    """

    if not isinstance(data, (bytes, bytearray, memoryview)):
        return _IRRELEVANT
    head = bytes(data[:SNIFF_BYTES])
    if not head:
        return _IRRELEVANT

    try:
        signature = _sniff(head)
    except Exception as exc:  # pragma: no cover - sniffers only slice and compare bytes
        logger.warning("Signature sniffing failed for %s: %s", declared_name or "<unnamed>", exc)
        return _IRRELEVANT

    logger.debug("Sniffed %s as %s/%s", declared_name or "<unnamed>", signature.kind, signature.format_name)
    return signature


def classify_container(data: bytes, declared_name: str = "") -> ContainerKind:
    """Return image, video, archive or irrelevant for a byte prefix."""

    return sniff_signature(data, declared_name).kind
