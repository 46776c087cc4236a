"""
Cloudinary delivery URLs

optimize_image_url inserts a transformation segment after `/upload/`.
If the URL already carries one it is replaced, so optimizing an
optimized URL with the same options gives back the same URL.
"""
import re
from typing import Iterable, Optional, Union
from urllib.parse import urlsplit, urlunsplit

CLOUDINARY_HOST = re.compile(r"^(https?:)?//res\.cloudinary\.com/")
TRANSFORM_PART = re.compile(
    r"^(f_(auto|webp|avif|jpg|png)"
    r"|q_(auto(:\w+)?|eco|best|good|low|\d{1,3})"
    r"|dpr_(auto|\d+(\.\d+)?)"
    r"|c_(fill|fit|scale|thumb|crop|pad|limit|lfill)"
    r"|g_\w+|w_\d+|h_\d+|e_[\w:]+|fl_\w+)$"
)

PRESETS = {
    "thumbnail": {"quality": "eco", "crop": "thumb", "flags": ["progressive", "immutable_cache"]},
    "card": {"quality": "auto", "crop": "fill", "flags": ["progressive", "immutable_cache"]},
    "hero": {"quality": "auto", "crop": "fill", "flags": ["progressive", "immutable_cache"]},
    "placeholder": {"quality": "eco", "crop": "fill", "blur": 50, "flags": ["progressive"]},
}


def is_cloudinary_url(url: Optional[str]) -> bool:
    return bool(url) and isinstance(url, str) and CLOUDINARY_HOST.match(url) is not None


def _is_transform_segment(segment: str) -> bool:
    # Only segments this module could have written; folders such as t_shirts stay.
    parts = segment.split(",")
    if not any(p.startswith(("f_", "q_")) for p in parts):
        return False
    return all(TRANSFORM_PART.match(p) for p in parts)


def optimize_image_url(
    url: Optional[str],
    width: Optional[int] = None,
    height: Optional[int] = None,
    quality: Union[int, str] = "auto",
    fmt: str = "auto",
    crop: str = "fill",
    gravity: str = "auto",
    dpr: Union[int, float, str] = "auto",
    flags: Iterable[str] = (),
    effect: Optional[str] = None,
    blur: Optional[int] = None,
) -> str:
    if not is_cloudinary_url(url):
        return url or ""

    parts = urlsplit(url)
    segments = parts.path.split("/")
    if "upload" not in segments:
        return url
    upload_index = segments.index("upload")

    transforms = []
    if fmt:
        transforms.append(f"f_{fmt}")
    if quality:
        transforms.append(f"q_{quality}")
    if dpr is not None:
        transforms.append(f"dpr_{dpr}")
    if crop:
        transforms.append(f"c_{crop}")
    if gravity:
        transforms.append(f"g_{gravity}")
    if width:
        transforms.append(f"w_{round(width)}")
    if height:
        transforms.append(f"h_{round(height)}")
    if effect:
        transforms.append(f"e_{effect}")
    if blur:
        transforms.append(f"e_blur:{blur}")
    transforms.extend(f"fl_{flag}" for flag in flags)

    rest = segments[upload_index + 1:]
    if rest and _is_transform_segment(rest[0]):
        rest = rest[1:]
    path = "/".join(segments[:upload_index + 1] + [",".join(transforms)] + rest)
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def preset_image_url(url: Optional[str], preset: str, width: Optional[int] = None, height: Optional[int] = None) -> str:
    return optimize_image_url(url, width=width, height=height, **PRESETS[preset])
