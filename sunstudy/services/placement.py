from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pandas as pd

from sunstudy.config import DEFAULT_BED_FEET, FOOTPRINT_MIN_PX, PIXELS_PER_FOOT
from sunstudy.services.errors import OutOfBoundsPlacement
from sunstudy.services.exposure import ExposureGrid

logger = logging.getLogger(__name__)

# Neighbour order used for tie-breaking (y grows downwards, so N is dy=-1)
DIRECTIONS: Tuple[Tuple[str, int, int], ...] = (
	("N", 0, -1),
	("NE", 1, -1),
	("E", 1, 0),
	("SE", 1, 1),
	("S", 0, 1),
	("SW", -1, 1),
	("W", -1, 0),
	("NW", -1, -1),
)

# Relative slack when comparing smoothed plateau scores
PLATEAU_TOLERANCE = 1e-7


@dataclass(frozen=True)
class Rectangle:
	"""
	Axis-aligned rectangle anchored at its center, in pixels.
	Covers columns [cx - w/2, cx + w/2) and rows [cy - h/2, cy + h/2).
	"""
	cx: int
	cy: int
	width: int
	height: int

	def bounds(self) -> Tuple[int, int, int, int]:
		x0 = self.cx - self.width // 2
		y0 = self.cy - self.height // 2
		return x0, y0, x0 + self.width, y0 + self.height

	def shifted(self, dx: int, dy: int) -> "Rectangle":
		return replace(self, cx=self.cx + dx, cy=self.cy + dy)

	def inside(self, grid_w: int, grid_h: int) -> bool:
		x0, y0, x1, y1 = self.bounds()
		return x0 >= 0 and y0 >= 0 and x1 <= grid_w and y1 <= grid_h

	def overlaps(self, grid_w: int, grid_h: int) -> bool:
		x0, y0, x1, y1 = self.bounds()
		return x1 > 0 and y1 > 0 and x0 < grid_w and y0 < grid_h


@dataclass(frozen=True)
class Footprint:
	width: int
	height: int

	@classmethod
	def of(cls, width: float, height: float) -> "Footprint":
		"""Round to whole pixels and clamp to the minimum size."""
		return cls(max(FOOTPRINT_MIN_PX, int(round(width))), max(FOOTPRINT_MIN_PX, int(round(height))))

	@classmethod
	def from_feet(cls, width_ft: float, height_ft: float, pixels_per_foot: float = PIXELS_PER_FOOT) -> "Footprint":
		return cls.of(width_ft * pixels_per_foot, height_ft * pixels_per_foot)

	@classmethod
	def default(cls) -> "Footprint":
		return cls.from_feet(*DEFAULT_BED_FEET)

	def flipped(self) -> "Footprint":
		return Footprint(self.height, self.width)

	def resized(self, dw: int, dh: int) -> "Footprint":
		return Footprint.of(self.width + dw, self.height + dh)

	def at(self, cx: float, cy: float) -> Rectangle:
		return Rectangle(math.floor(cx + 0.5), math.floor(cy + 0.5), self.width, self.height)


@dataclass(frozen=True)
class ScoredPlacement:
	rectangle: Rectangle
	score: int
	percentage: float
	steps: int = 0

	def to_dict(self) -> Dict[str, Any]:
		return {
			"cx": self.rectangle.cx,
			"cy": self.rectangle.cy,
			"width": self.rectangle.width,
			"height": self.rectangle.height,
			"score": self.score,
			"percentage": self.percentage,
			"steps": self.steps,
		}


class SearchStatus(str, Enum):
	SEARCHING = "searching"
	FROZEN = "frozen"


@dataclass(frozen=True)
class SearchState:
	rectangle: Rectangle
	score: int
	status: SearchStatus = SearchStatus.SEARCHING
	steps: int = 0

	@property
	def frozen(self) -> bool:
		return self.status is SearchStatus.FROZEN

	def freeze(self) -> "SearchState":
		return replace(self, status=SearchStatus.FROZEN)

	def to_placement(self) -> ScoredPlacement:
		if not self.frozen:
			raise ValueError("Search is still improving; only frozen states become placements")
		r = self.rectangle
		return ScoredPlacement(rectangle=r, score=self.score, percentage=percentage(self.score, r.width, r.height), steps=self.steps)


def _window_sum(table, rect: Rectangle, grid_w: int, grid_h: int) -> float:
	x0, y0, x1, y1 = rect.bounds()
	x0, x1 = min(max(x0, 0), grid_w), min(max(x1, 0), grid_w)
	y0, y1 = min(max(y0, 0), grid_h), min(max(y1, 0), grid_h)
	if x1 <= x0 or y1 <= y0:
		return 0.0
	return float(table[y1, x1] - table[y0, x1] - table[y1, x0] + table[y0, x0])


def score(grid: ExposureGrid, rect: Rectangle) -> int:
	"""Sum of grid values under `rect`, clipped to the grid; off-grid cells count 0."""
	return int(round(_window_sum(grid.integral, rect, grid.width, grid.height)))


def percentage(score: float, width: int, height: int) -> float:
	"""Score as a share (0..100) of the best possible score for a width x height footprint."""
	area = width * height
	if area <= 0:
		return 0.0
	return score / area / 255.0 * 100.0


def _smoothed_score(grid: ExposureGrid, rect: Rectangle) -> float:
	return _window_sum(grid.smoothed_integral, rect, grid.width, grid.height)


def start_search(grid: ExposureGrid, initial: Rectangle) -> SearchState:
	if not initial.overlaps(grid.width, grid.height):
		raise OutOfBoundsPlacement(initial, grid.size)
	return SearchState(rectangle=initial, score=score(grid, initial))


def climb_step(grid: ExposureGrid, state: SearchState, plateau: bool = True) -> SearchState:
	"""
	One steepest-ascent transition.

	Neighbours that would leave the grid are skipped. The best neighbour wins
	only if its score is strictly higher; ties go to the earlier direction.
	With `plateau` on, a neighbour that merely ties the current score is taken
	only when the smoothed grid scores it strictly higher, so flat regions are
	crossed toward brighter areas while uniform grids still freeze.
	"""
	if state.frozen:
		return state
	candidates: List[Tuple[Rectangle, int]] = []
	for _, dx, dy in DIRECTIONS:
		cand = state.rectangle.shifted(dx, dy)
		if cand.inside(grid.width, grid.height):
			candidates.append((cand, score(grid, cand)))
	if not candidates:
		return state.freeze()

	best_rect, best_score = candidates[0]
	for cand, s in candidates[1:]:
		if s > best_score:
			best_rect, best_score = cand, s
	if best_score > state.score:
		return replace(state, rectangle=best_rect, score=best_score, steps=state.steps + 1)

	if plateau and best_score == state.score:
		current = _smoothed_score(grid, state.rectangle)
		tol = PLATEAU_TOLERANCE * max(1.0, abs(current))
		flat_rect: Optional[Rectangle] = None
		flat_best = 0.0
		for cand, s in candidates:
			if s != state.score:
				continue
			smooth = _smoothed_score(grid, cand)
			if flat_rect is None or smooth > flat_best + tol:
				flat_rect, flat_best = cand, smooth
		if flat_rect is not None and flat_best > current + tol:
			return replace(state, rectangle=flat_rect, steps=state.steps + 1)

	return state.freeze()


def iter_search(grid: ExposureGrid, initial: Rectangle, plateau: bool = True, max_steps: Optional[int] = None) -> Iterator[SearchState]:
	"""Yield every state from the seed to the frozen placement."""
	state = start_search(grid, initial)
	limit = grid.width * grid.height if max_steps is None else max(0, int(max_steps))
	yield state
	while not state.frozen:
		if state.steps >= limit:
			logger.warning("Hill climb hit the %d step limit at (%d, %d)", limit, state.rectangle.cx, state.rectangle.cy)
			state = state.freeze()
		else:
			state = climb_step(grid, state, plateau=plateau)
		yield state


def hill_climb(grid: ExposureGrid, initial: Rectangle, plateau: bool = True, max_steps: Optional[int] = None) -> ScoredPlacement:
	state = None
	for state in iter_search(grid, initial, plateau=plateau, max_steps=max_steps):
		pass
	placement = state.to_placement()
	logger.info(
		"Hill climb from (%d, %d) froze at (%d, %d) after %d steps, score %d (%.1f%%)",
		initial.cx, initial.cy, placement.rectangle.cx, placement.rectangle.cy, placement.steps, placement.score, placement.percentage,
	)
	return placement


class PlacementSet:
	"""Append-only, ordered record of finalized placements. Appends are serialized."""

	COLUMNS = ["cx", "cy", "width", "height", "score", "percentage", "steps"]

	def __init__(self) -> None:
		self._items: List[ScoredPlacement] = []
		self._lock = threading.Lock()

	def append(self, placement: ScoredPlacement) -> int:
		with self._lock:
			self._items.append(placement)
			return len(self._items) - 1

	def append_if_best(self, placement: ScoredPlacement) -> Optional[int]:
		"""Append only if `placement` beats every recorded percentage; compare and append are one step."""
		with self._lock:
			if any(p.percentage >= placement.percentage for p in self._items):
				return None
			self._items.append(placement)
			return len(self._items) - 1

	def snapshot(self) -> Tuple[ScoredPlacement, ...]:
		with self._lock:
			return tuple(self._items)

	def __len__(self) -> int:
		with self._lock:
			return len(self._items)

	def __iter__(self) -> Iterator[ScoredPlacement]:
		return iter(self.snapshot())

	def __getitem__(self, idx: int) -> ScoredPlacement:
		with self._lock:
			return self._items[idx]

	def best(self) -> Optional[ScoredPlacement]:
		items = self.snapshot()
		if not items:
			return None
		# first placement wins ties
		return max(items, key=lambda p: p.percentage)

	def to_frame(self) -> pd.DataFrame:
		return pd.DataFrame([p.to_dict() for p in self.snapshot()], columns=self.COLUMNS)
