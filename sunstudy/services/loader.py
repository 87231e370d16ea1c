from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image

from sunstudy.config import SUPPORTED_IMAGE_EXTS
from sunstudy.services.image_utils import apply_exif_orientation, to_pixel_buffer
from sunstudy.services.metadata import capture_time, order_by_capture_time

logger = logging.getLogger(__name__)

Source = Union[Path, bytes]
ProgressHook = Callable[[int, int, int], None]


@dataclass
class LoadedStack:
	buffers: List[np.ndarray] = field(default_factory=list)
	names: List[str] = field(default_factory=list)
	capture_times: List[Optional[datetime]] = field(default_factory=list)
	failed: List[Tuple[str, str]] = field(default_factory=list)  # (name, reason)

	@property
	def loaded(self) -> int:
		return len(self.buffers)

	@property
	def sizes(self) -> List[Tuple[int, int]]:
		return sorted({(int(b.shape[1]), int(b.shape[0])) for b in self.buffers})


def list_image_files(folder: Path) -> List[Path]:
	return sorted([p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in SUPPORTED_IMAGE_EXTS])


def load_buffer(source: Source) -> np.ndarray:
	"""Decode one image into an RGBA pixel buffer with EXIF orientation applied."""
	fp = source if isinstance(source, Path) else BytesIO(source)
	with Image.open(fp) as img:
		img = apply_exif_orientation(img, img.getexif())
		return to_pixel_buffer(img)


def load_stack(sources: Sequence[Tuple[str, Source]], on_progress: Optional[ProgressHook] = None) -> LoadedStack:
	"""
	Load (name, path-or-bytes) pairs into pixel buffers ordered by capture time.

	Files that fail to decode are logged and listed in `failed`; they never stop
	the rest of the stack from loading. `on_progress(loaded, failed, total)` is
	called after every file. Sizes are not reconciled here: mismatched frames are
	rejected later by the aggregator rather than stretched.
	"""
	total = len(sources)
	loaded: List[Tuple[str, np.ndarray, Optional[datetime]]] = []
	failed: List[Tuple[str, str]] = []
	for name, src in sources:
		try:
			buf = load_buffer(src)
		except (OSError, ValueError, Image.DecompressionBombError) as e:
			logger.warning("Skipping %s: %s", name, e)
			failed.append((name, str(e)))
		else:
			loaded.append((name, buf, capture_time(src)))
		if on_progress is not None:
			on_progress(len(loaded), len(failed), total)

	ordered = order_by_capture_time(loaded, [t for _, _, t in loaded])
	stack = LoadedStack(
		buffers=[b for _, b, _ in ordered],
		names=[n for n, _, _ in ordered],
		capture_times=[t for _, _, t in ordered],
		failed=failed,
	)
	logger.info("Loaded %d/%d images (%d failed)", stack.loaded, total, len(failed))
	return stack


def load_folder(folder: Path, on_progress: Optional[ProgressHook] = None) -> LoadedStack:
	folder = folder.resolve()
	return load_stack([(p.name, p) for p in list_image_files(folder)], on_progress=on_progress)
