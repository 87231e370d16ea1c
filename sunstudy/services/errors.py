from __future__ import annotations


class SunStudyError(ValueError):
	"""Base class for errors raised by the exposure and placement services."""


class DimensionMismatchError(SunStudyError):
	def __init__(self, expected, got, index: int):
		self.expected = expected
		self.got = got
		self.index = index
		super().__init__(f"Buffer {index} has shape {got}, expected {expected}")


class EmptyInputError(SunStudyError):
	def __init__(self, message: str = "No pixel buffers to aggregate"):
		super().__init__(message)


class OutOfBoundsPlacement(SunStudyError):
	def __init__(self, rect, grid_size):
		self.rect = rect
		self.grid_size = grid_size
		super().__init__(f"Rectangle {rect} lies outside the {grid_size[0]}x{grid_size[1]} grid")


class BuildCancelled(SunStudyError):
	def __init__(self, rows_done: int, total_rows: int):
		self.rows_done = rows_done
		self.total_rows = total_rows
		super().__init__(f"Aggregation cancelled after {rows_done}/{total_rows} rows")


class GridNotReady(SunStudyError):
	def __init__(self, message: str = "Exposure grid has not been built yet"):
		super().__init__(message)
