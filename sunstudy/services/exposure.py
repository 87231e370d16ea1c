"""
Exposure aggregation.

Turns a stack of aligned time-lapse frames into one grayscale exposure grid:
each cell holds how many frames saw that pixel brighter than the threshold,
rescaled to 0..255.
"""
from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import cached_property
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from sunstudy.config import DEFAULT_CHUNK_ROWS, DEFAULT_HOURS_PER_IMAGE, PLATEAU_SIGMA_MAX, PLATEAU_SIGMA_MIN
from sunstudy.services.errors import BuildCancelled, DimensionMismatchError, EmptyInputError
from sunstudy.services.image_utils import luma

logger = logging.getLogger(__name__)

ChunkHook = Callable[[int, int], None]


@dataclass(frozen=True)
class PixelReport:
	x: int
	y: int
	value: int
	sunny_count: int
	n_images: int
	sun_hours: float
	total_hours: float
	daylight_percentage: float


@dataclass(frozen=True)
class LegendEntry:
	sunny_count: int
	value: int
	hours: float


@dataclass(frozen=True, eq=False)
class ExposureGrid:
	counts: np.ndarray  # [H,W] sunny-frame counts in [0, n_images]
	values: np.ndarray  # [H,W] uint8 grayscale, round(count / n * 255)
	n_images: int
	threshold: float

	@classmethod
	def from_values(cls, values, threshold: float = float("nan")) -> "ExposureGrid":
		"""
		Wrap an existing 0..255 value map, e.g. a previously exported heat map.
		Each value is read as a count out of 255 frames so values round-trip unchanged.
		"""
		vals = np.clip(np.rint(np.asarray(values, dtype=np.float64)), 0, 255).astype(np.uint8)
		if vals.ndim != 2:
			raise DimensionMismatchError(expected="(H, W)", got=vals.shape, index=0)
		if vals.size == 0:
			raise EmptyInputError("Value map has no cells")
		counts = vals.astype(np.uint16)
		counts.setflags(write=False)
		vals.setflags(write=False)
		return cls(counts=counts, values=vals, n_images=255, threshold=float(threshold))

	@property
	def width(self) -> int:
		return int(self.values.shape[1])

	@property
	def height(self) -> int:
		return int(self.values.shape[0])

	@property
	def size(self) -> Tuple[int, int]:
		return (self.width, self.height)

	def contains(self, x: int, y: int) -> bool:
		return 0 <= x < self.width and 0 <= y < self.height

	def _check(self, x: int, y: int) -> None:
		if not self.contains(x, y):
			raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} grid")

	def value_at(self, x: int, y: int) -> int:
		self._check(x, y)
		return int(self.values[y, x])

	def count_at(self, x: int, y: int) -> int:
		self._check(x, y)
		return int(self.counts[y, x])

	def inspect(self, x: int, y: int, hours_per_image: float = DEFAULT_HOURS_PER_IMAGE) -> PixelReport:
		"""Hover readout: sunny frames at (x, y) as hours of sun and share of daylight."""
		count = self.count_at(x, y)
		return PixelReport(
			x=int(x),
			y=int(y),
			value=self.value_at(x, y),
			sunny_count=count,
			n_images=self.n_images,
			sun_hours=count * hours_per_image,
			total_hours=self.n_images * hours_per_image,
			daylight_percentage=count / self.n_images * 100.0,
		)

	def legend(self, hours_per_image: float = DEFAULT_HOURS_PER_IMAGE, every: Optional[int] = None) -> List[LegendEntry]:
		"""
		Legend stops from always-sunny down to never-sunny.
		Intermediate stops are spaced `every` frames down from the top (default:
		all for small stacks, every second one otherwise); both ends are always present.
		"""
		n = self.n_images
		if every is None:
			every = 1 if n <= 6 else 2
		every = max(1, int(every))
		entries: List[LegendEntry] = []
		for count in range(n, -1, -1):
			if count in (0, n) or (n - count) % every == 0:
				entries.append(LegendEntry(count, int(_scale_counts(np.array([count]), n)[0]), count * hours_per_image))
		return entries

	def to_rgba(self) -> np.ndarray:
		"""Opaque grayscale RGBA image [H,W,4] for renderers and export."""
		rgba = np.empty((self.height, self.width, 4), dtype=np.uint8)
		rgba[..., :3] = self.values[..., np.newaxis]
		rgba[..., 3] = 255
		return rgba

	@cached_property
	def integral(self) -> np.ndarray:
		"""Summed-area table of `values`, shape [H+1,W+1]."""
		return cv2.integral(self.values.copy(), sdepth=cv2.CV_64F)

	@cached_property
	def plateau_sigma(self) -> float:
		return float(min(PLATEAU_SIGMA_MAX, max(PLATEAU_SIGMA_MIN, max(self.width, self.height) / 8.0)))

	@cached_property
	def smoothed_integral(self) -> np.ndarray:
		"""Summed-area table of a Gaussian-smoothed copy of `values`."""
		smooth = cv2.GaussianBlur(self.values.astype(np.float64), (0, 0), self.plateau_sigma, borderType=cv2.BORDER_REFLECT_101)
		return cv2.integral(smooth, sdepth=cv2.CV_64F)


def _scale_counts(counts: np.ndarray, n_images: int) -> np.ndarray:
	# round half up; count * 255 is exact so .5 cases stay exact
	return np.floor(counts.astype(np.float64) * 255.0 / float(n_images) + 0.5).astype(np.uint8)


def _validate(buffers: Sequence[np.ndarray]) -> Tuple[List[np.ndarray], Tuple[int, int]]:
	if buffers is None or len(buffers) == 0:
		raise EmptyInputError()
	arrays = [np.asarray(b) for b in buffers]
	first = arrays[0]
	if first.ndim != 3 or first.shape[2] not in (3, 4):
		raise DimensionMismatchError(expected="(H, W, 3|4)", got=first.shape, index=0)
	h, w = first.shape[:2]
	if h == 0 or w == 0:
		raise EmptyInputError("Pixel buffers have no pixels")
	for idx, arr in enumerate(arrays):
		if arr.ndim != 3 or arr.shape[2] not in (3, 4) or arr.shape[:2] != (h, w):
			raise DimensionMismatchError(expected=(h, w), got=arr.shape, index=idx)
	return arrays, (h, w)


def _row_chunks(height: int, chunk_rows: Optional[int]) -> List[Tuple[int, int]]:
	step = max(1, int(chunk_rows or DEFAULT_CHUNK_ROWS))
	return [(y0, min(height, y0 + step)) for y0 in range(0, height, step)]


def _count_rows(arrays: Sequence[np.ndarray], threshold: float, y0: int, y1: int, dtype) -> np.ndarray:
	counts = np.zeros((y1 - y0, arrays[0].shape[1]), dtype=dtype)
	for arr in arrays:
		counts += luma(arr[y0:y1]) > threshold
	return counts


def _aggregate(arrays: Sequence[np.ndarray], threshold: float, counts: np.ndarray, chunk_rows: Optional[int], cancel, workers: int) -> Iterator[Tuple[int, int]]:
	"""
	Fill `counts` one row chunk at a time, yielding (rows_done, total_rows) after each chunk.
	Cancellation is checked before every chunk.
	"""
	total = counts.shape[0]
	chunks = _row_chunks(total, chunk_rows)
	if workers > 1:
		with ThreadPoolExecutor(max_workers=workers) as pool:
			futures = [pool.submit(_count_rows, arrays, threshold, y0, y1, counts.dtype) for (y0, y1) in chunks]
			for (y0, y1), fut in zip(chunks, futures):
				if cancel is not None and cancel.is_set():
					for f in futures:
						f.cancel()
					raise BuildCancelled(y0, total)
				counts[y0:y1] = fut.result()
				yield y1, total
		return
	for y0, y1 in chunks:
		if cancel is not None and cancel.is_set():
			raise BuildCancelled(y0, total)
		counts[y0:y1] = _count_rows(arrays, threshold, y0, y1, counts.dtype)
		yield y1, total


def _new_counts(shape: Tuple[int, int], n_images: int) -> np.ndarray:
	dtype = np.uint16 if n_images <= np.iinfo(np.uint16).max else np.uint32
	return np.zeros(shape, dtype=dtype)


def _finalize(counts: np.ndarray, n_images: int, threshold: float) -> ExposureGrid:
	values = _scale_counts(counts, n_images)
	counts.setflags(write=False)
	values.setflags(write=False)
	return ExposureGrid(counts=counts, values=values, n_images=n_images, threshold=float(threshold))


def build(
	buffers: Sequence[np.ndarray],
	threshold: float,
	chunk_rows: Optional[int] = None,
	on_chunk: Optional[ChunkHook] = None,
	cancel=None,
	workers: int = 1,
) -> ExposureGrid:
	"""
	Aggregate N equally sized RGBA/RGB buffers into an ExposureGrid.

	A pixel is sunny in a frame when its BT.601 luma is strictly greater than
	`threshold`. Work is split into row chunks; `on_chunk(rows_done, total)` is
	called after each one and `cancel.is_set()` is checked before each one.
	Chunking and `workers` never change the result. Inputs are not modified.
	"""
	arrays, shape = _validate(buffers)
	t0 = time.perf_counter()
	counts = _new_counts(shape, len(arrays))
	for rows_done, total in _aggregate(arrays, float(threshold), counts, chunk_rows, cancel, workers):
		if on_chunk is not None:
			on_chunk(rows_done, total)
	grid = _finalize(counts, len(arrays), threshold)
	logger.info("Built %dx%d exposure grid from %d images at threshold %s in %.2fs", shape[1], shape[0], len(arrays), threshold, time.perf_counter() - t0)
	return grid


async def build_async(
	buffers: Sequence[np.ndarray],
	threshold: float,
	chunk_rows: Optional[int] = None,
	on_chunk: Optional[ChunkHook] = None,
	cancel=None,
) -> ExposureGrid:
	"""Same as `build`, yielding to the event loop between row chunks."""
	arrays, shape = _validate(buffers)
	t0 = time.perf_counter()
	counts = _new_counts(shape, len(arrays))
	for rows_done, total in _aggregate(arrays, float(threshold), counts, chunk_rows, cancel, 1):
		if on_chunk is not None:
			on_chunk(rows_done, total)
		await asyncio.sleep(0)
	grid = _finalize(counts, len(arrays), threshold)
	logger.info("Built %dx%d exposure grid from %d images at threshold %s in %.2fs", shape[1], shape[0], len(arrays), threshold, time.perf_counter() - t0)
	return grid
