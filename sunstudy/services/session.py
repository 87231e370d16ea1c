"""
Session state for one sun study.

A session owns the frame stack, the current threshold and exposure grid, the
footprint used for new rectangles and the placements found so far. It is
created when a stack is uploaded, changed only through the command methods
below and dropped when the study ends.
"""
from __future__ import annotations

import logging
import threading
import uuid
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from sunstudy.config import (
	DEFAULT_HOURS_PER_IMAGE,
	DEFAULT_THRESHOLD,
	FOOTPRINT_STEP_PX,
	THRESHOLD_MAX,
	THRESHOLD_MIN,
	THRESHOLD_STEP,
)
from sunstudy.services.errors import GridNotReady
from sunstudy.services.exposure import ChunkHook, ExposureGrid, LegendEntry, PixelReport, build, build_async
from sunstudy.services.placement import Footprint, PlacementSet, ScoredPlacement, hill_climb, percentage, score

logger = logging.getLogger(__name__)


class AccumulationPolicy(str, Enum):
	ALL = "all"    # keep every finished search
	BEST = "best"  # keep a search only if it beats every earlier one


def clamp_threshold(value: float) -> int:
	return int(min(THRESHOLD_MAX, max(THRESHOLD_MIN, round(value))))


class Session:
	def __init__(
		self,
		buffers: Sequence[np.ndarray],
		threshold: float = DEFAULT_THRESHOLD,
		footprint: Optional[Footprint] = None,
		policy: AccumulationPolicy = AccumulationPolicy.ALL,
		hours_per_image: float = DEFAULT_HOURS_PER_IMAGE,
		chunk_rows: Optional[int] = None,
		workers: int = 1,
		session_id: Optional[str] = None,
	) -> None:
		self.id = session_id or uuid.uuid4().hex
		self._buffers: Tuple[np.ndarray, ...] = tuple(buffers)
		self.threshold = clamp_threshold(threshold)
		self.footprint = footprint or Footprint.default()
		self.policy = AccumulationPolicy(policy)
		self.hours_per_image = float(hours_per_image)
		self.chunk_rows = chunk_rows
		self.workers = workers
		self.placements = PlacementSet()
		self.grid: Optional[ExposureGrid] = None
		self._build_lock = threading.Lock()
		self._tickets = 0
		self._committed_ticket = 0

	@property
	def buffers(self) -> Tuple[np.ndarray, ...]:
		return self._buffers

	def require_grid(self) -> ExposureGrid:
		grid = self.grid
		if grid is None:
			raise GridNotReady()
		return grid

	def rebuild(self, threshold: Optional[float] = None, on_chunk: Optional[ChunkHook] = None, cancel=None) -> ExposureGrid:
		"""
		Re-run the full aggregation, optionally at a new threshold.
		Grid and threshold are swapped in together, and only once the build finishes.
		"""
		value = self.threshold if threshold is None else clamp_threshold(threshold)
		with self._build_lock:
			ticket = self._take_ticket()
			grid = build(self._buffers, value, chunk_rows=self.chunk_rows, on_chunk=on_chunk, cancel=cancel, workers=self.workers)
			self._commit(ticket, grid, value)
		return grid

	async def rebuild_async(self, threshold: Optional[float] = None, on_chunk: Optional[ChunkHook] = None, cancel=None) -> ExposureGrid:
		"""
		Like `rebuild`, but yields to the event loop between row chunks.
		If a rebuild started later has already committed, this result is returned but not kept.
		"""
		value = self.threshold if threshold is None else clamp_threshold(threshold)
		with self._build_lock:
			ticket = self._take_ticket()
		grid = await build_async(self._buffers, value, chunk_rows=self.chunk_rows, on_chunk=on_chunk, cancel=cancel)
		with self._build_lock:
			if not self._commit(ticket, grid, value):
				logger.info("Discarded threshold %d grid, a newer rebuild already committed", value)
		return grid

	# callers hold _build_lock
	def _take_ticket(self) -> int:
		self._tickets += 1
		return self._tickets

	def _commit(self, ticket: int, grid: ExposureGrid, value: int) -> bool:
		if ticket < self._committed_ticket:
			return False
		self._committed_ticket = ticket
		self.grid, self.threshold = grid, value
		return True

	def set_threshold(self, value: float, on_chunk: Optional[ChunkHook] = None) -> ExposureGrid:
		return self.rebuild(threshold=value, on_chunk=on_chunk)

	def raise_threshold(self, on_chunk: Optional[ChunkHook] = None) -> ExposureGrid:
		grid = self.set_threshold(self.threshold + THRESHOLD_STEP, on_chunk=on_chunk)
		logger.info("Threshold increased to %d", self.threshold)
		return grid

	def lower_threshold(self, on_chunk: Optional[ChunkHook] = None) -> ExposureGrid:
		grid = self.set_threshold(self.threshold - THRESHOLD_STEP, on_chunk=on_chunk)
		logger.info("Threshold decreased to %d", self.threshold)
		return grid

	def flip_footprint(self) -> Footprint:
		self.footprint = self.footprint.flipped()
		return self.footprint

	def grow_footprint(self, step: int = FOOTPRINT_STEP_PX) -> Footprint:
		self.footprint = self.footprint.resized(step, step)
		return self.footprint

	def shrink_footprint(self, step: int = FOOTPRINT_STEP_PX) -> Footprint:
		self.footprint = self.footprint.resized(-step, -step)
		return self.footprint

	def resize_footprint(self, width: float, height: float) -> Footprint:
		self.footprint = Footprint.of(width, height)
		return self.footprint

	def evaluate(self, x: float, y: float) -> ScoredPlacement:
		"""Score the current footprint centered at (x, y) without searching."""
		grid = self.require_grid()
		rect = self.footprint.at(x, y)
		s = score(grid, rect)
		return ScoredPlacement(rectangle=rect, score=s, percentage=percentage(s, rect.width, rect.height))

	def search(self, x: float, y: float, plateau: bool = True) -> Tuple[ScoredPlacement, bool]:
		"""
		Hill-climb from (x, y) with the current footprint.
		Returns the frozen placement and whether the accumulation policy recorded it.
		"""
		grid = self.require_grid()
		placement = hill_climb(grid, self.footprint.at(x, y), plateau=plateau)
		return placement, self.record(placement)

	def record(self, placement: ScoredPlacement) -> bool:
		if self.policy is AccumulationPolicy.BEST:
			return self.placements.append_if_best(placement) is not None
		self.placements.append(placement)
		return True

	def inspect(self, x: int, y: int) -> PixelReport:
		return self.require_grid().inspect(x, y, hours_per_image=self.hours_per_image)

	def legend(self, every: Optional[int] = None) -> List[LegendEntry]:
		return self.require_grid().legend(hours_per_image=self.hours_per_image, every=every)

	def export_rgba(self) -> np.ndarray:
		return self.require_grid().to_rgba()

	def summary(self) -> Dict[str, object]:
		grid = self.grid
		return {
			"session_id": self.id,
			"n_images": len(self._buffers),
			"threshold": self.threshold,
			"width": grid.width if grid is not None else None,
			"height": grid.height if grid is not None else None,
			"footprint": {"width": self.footprint.width, "height": self.footprint.height},
			"policy": self.policy.value,
			"hours_per_image": self.hours_per_image,
			"placements": len(self.placements),
		}


class SessionRegistry:
	def __init__(self) -> None:
		self._sessions: Dict[str, Session] = {}
		self._lock = threading.Lock()

	def add(self, session: Session) -> Session:
		with self._lock:
			self._sessions[session.id] = session
		return session

	def get(self, session_id: str) -> Session:
		with self._lock:
			return self._sessions[session_id]

	def drop(self, session_id: str) -> Optional[Session]:
		with self._lock:
			return self._sessions.pop(session_id, None)

	def __contains__(self, session_id: str) -> bool:
		with self._lock:
			return session_id in self._sessions

	def __len__(self) -> int:
		return len(self._sessions)
