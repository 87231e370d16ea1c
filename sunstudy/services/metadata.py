from __future__ import annotations

import logging
import struct
from datetime import datetime
from pathlib import Path
from statistics import median
from typing import Any, List, Optional, Sequence, TypeVar, Union

import piexif

from sunstudy.config import DEFAULT_HOURS_PER_IMAGE

logger = logging.getLogger(__name__)

EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"

T = TypeVar("T")


def _bytes_to_str(v: Any) -> Optional[str]:
	if v is None:
		return None
	if isinstance(v, bytes):
		return v.decode("utf-8", errors="ignore").strip("\x00 ")
	if isinstance(v, str):
		return v
	return str(v)


def capture_time(source: Union[Path, bytes]) -> Optional[datetime]:
	"""
	DateTimeOriginal (falling back to the 0th IFD DateTime) of a JPEG/TIFF/WebP
	file or blob. Returns None when the image carries no usable EXIF.
	"""
	try:
		ex = piexif.load(str(source) if isinstance(source, Path) else source)
	except (ValueError, struct.error, OSError) as e:
		logger.debug("No EXIF in %s: %s", source if isinstance(source, Path) else "<bytes>", e)
		return None
	exif = ex.get("Exif", {})
	zeroth = ex.get("0th", {})
	dt = exif.get(piexif.ExifIFD.DateTimeOriginal) or zeroth.get(piexif.ImageIFD.DateTime)
	text = _bytes_to_str(dt)
	if not text:
		return None
	try:
		return datetime.strptime(text, EXIF_DATETIME_FORMAT)
	except ValueError:
		logger.debug("Unparseable EXIF datetime %r", text)
		return None


def hours_per_image(times: Sequence[Optional[datetime]], default: float = DEFAULT_HOURS_PER_IMAGE) -> float:
	"""
	Median spacing between consecutive capture times, in hours.
	Falls back to `default` when fewer than two distinct timestamps are known.
	"""
	known = sorted(t for t in times if t is not None)
	gaps = [(b - a).total_seconds() / 3600.0 for a, b in zip(known, known[1:])]
	gaps = [g for g in gaps if g > 0]
	if not gaps:
		return default
	return float(median(gaps))


def order_by_capture_time(items: Sequence[T], times: Sequence[Optional[datetime]]) -> List[T]:
	"""Stable sort by capture time; items without a timestamp keep their order at the end."""
	pairs = list(zip(items, times))
	pairs.sort(key=lambda t: (t[1] is None, t[1] or datetime.min))
	return [item for item, _ in pairs]
