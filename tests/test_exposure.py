"""
Unit tests for the exposure aggregator.
"""

import asyncio
import threading

import numpy as np
import pytest

from conftest import solid
from sunstudy.services.errors import BuildCancelled, DimensionMismatchError, EmptyInputError
from sunstudy.services.exposure import ExposureGrid, build, build_async


class TestBuild:
	"""Pixel-wise aggregation of a frame stack."""

	def test_all_shady_gives_zero_grid(self):
		buffers = [solid(6, 4, (100, 100, 100)) for _ in range(5)]
		grid = build(buffers, 200)

		assert grid.size == (6, 4)
		assert grid.n_images == 5
		assert np.all(grid.values == 0)
		assert np.all(grid.counts == 0)

	def test_all_sunny_gives_max_grid(self):
		buffers = [solid(6, 4, (250, 250, 250)) for _ in range(3)]
		grid = build(buffers, 200)

		assert np.all(grid.values == 255)
		assert np.all(grid.counts == 3)

	def test_half_sunny_rounds_to_128(self):
		sunny = [solid(1, 1, (255, 255, 255)) for _ in range(45)]
		shady = [solid(1, 1, (0, 0, 0)) for _ in range(45)]
		grid = build(sunny + shady, 200)

		assert grid.count_at(0, 0) == 45
		assert grid.value_at(0, 0) == 128

	def test_threshold_is_strict(self):
		# pure red: luma = 0.299 * 255 = 76.245
		buffers = [solid(2, 2, (255, 0, 0))]

		assert np.all(build(buffers, 76).counts == 1)
		assert np.all(build(buffers, 77).counts == 0)

	def test_luma_weights(self):
		# pure green: 0.587 * 255 = 149.685, pure blue: 0.114 * 255 = 29.07
		assert build([solid(1, 1, (0, 255, 0))], 149).count_at(0, 0) == 1
		assert build([solid(1, 1, (0, 255, 0))], 150).count_at(0, 0) == 0
		assert build([solid(1, 1, (0, 0, 255))], 29).count_at(0, 0) == 1
		assert build([solid(1, 1, (0, 0, 255))], 30).count_at(0, 0) == 0

	def test_alpha_is_ignored(self):
		grid = build([solid(3, 3, (255, 255, 255), alpha=0)], 200)
		assert np.all(grid.values == 255)

	def test_rgb_buffers_accepted(self):
		rgb = np.full((3, 5, 3), 230, dtype=np.uint8)
		grid = build([rgb, rgb], 200)
		assert grid.size == (5, 3)
		assert np.all(grid.values == 255)

	def test_per_pixel_counts(self):
		a = solid(3, 1, (0, 0, 0))
		b = solid(3, 1, (0, 0, 0))
		a[0, 1, :3] = 255
		a[0, 2, :3] = 255
		b[0, 2, :3] = 255
		grid = build([a, b], 128)

		assert list(grid.counts[0]) == [0, 1, 2]
		assert list(grid.values[0]) == [0, 128, 255]

	def test_deterministic_and_pure(self, random_stack):
		before = [b.copy() for b in random_stack]
		first = build(random_stack, 120)
		second = build(random_stack, 120)

		assert np.array_equal(first.values, second.values)
		assert np.array_equal(first.counts, second.counts)
		for b, orig in zip(random_stack, before):
			assert np.array_equal(b, orig)

	def test_raising_threshold_never_increases_counts(self, random_stack):
		previous = None
		for threshold in range(0, 256, 25):
			counts = build(random_stack, threshold).counts.astype(int)
			if previous is not None:
				assert np.all(counts <= previous)
			previous = counts

	def test_grid_is_read_only(self, random_stack):
		grid = build(random_stack, 100)
		with pytest.raises(ValueError):
			grid.values[0, 0] = 1


class TestBuildErrors:

	def test_empty_input(self):
		with pytest.raises(EmptyInputError):
			build([], 200)

	def test_dimension_mismatch(self):
		buffers = [solid(4, 4, (0, 0, 0)), solid(4, 5, (0, 0, 0))]
		with pytest.raises(DimensionMismatchError) as err:
			build(buffers, 200)
		assert err.value.index == 1

	def test_bad_channel_count(self):
		with pytest.raises(DimensionMismatchError):
			build([np.zeros((4, 4), dtype=np.uint8)], 200)


class TestChunking:
	"""Chunk size, workers and the async driver never change the grid."""

	@pytest.mark.parametrize("chunk_rows", [1, 5, 12, 1000])
	def test_chunk_size_does_not_change_result(self, random_stack, chunk_rows):
		reference = build(random_stack, 140, chunk_rows=3)
		grid = build(random_stack, 140, chunk_rows=chunk_rows)
		assert np.array_equal(grid.values, reference.values)

	def test_thread_pool_matches_serial(self, random_stack):
		serial = build(random_stack, 90)
		pooled = build(random_stack, 90, chunk_rows=2, workers=4)
		assert np.array_equal(serial.counts, pooled.counts)

	def test_on_chunk_reports_progress(self, random_stack):
		seen = []
		build(random_stack, 90, chunk_rows=5, on_chunk=lambda done, total: seen.append((done, total)))
		assert seen == [(5, 12), (10, 12), (12, 12)]

	def test_cancel_between_chunks(self, random_stack):
		cancel = threading.Event()
		with pytest.raises(BuildCancelled) as err:
			build(random_stack, 90, chunk_rows=4, on_chunk=lambda done, total: cancel.set(), cancel=cancel)
		assert err.value.rows_done == 4
		assert err.value.total_rows == 12

	def test_cancel_with_thread_pool(self, random_stack):
		cancel = threading.Event()
		seen = []

		def hook(done, total):
			seen.append(done)
			cancel.set()

		with pytest.raises(BuildCancelled) as err:
			build(random_stack, 90, chunk_rows=4, on_chunk=hook, cancel=cancel, workers=4)
		assert seen == [4]
		assert err.value.rows_done == 4

	def test_async_matches_sync(self, random_stack):
		seen = []
		grid = asyncio.run(build_async(random_stack, 160, chunk_rows=4, on_chunk=lambda d, t: seen.append(d)))
		assert np.array_equal(grid.values, build(random_stack, 160).values)
		assert seen == [4, 8, 12]


class TestGridQueries:

	def _grid(self):
		# 4 frames: pixel x is sunny in x of them
		frames = []
		for i in range(4):
			f = solid(5, 1, (0, 0, 0))
			f[0, i + 1:, :3] = 255
			frames.append(f)
		return build(frames, 200)

	def test_counts_layout(self):
		assert list(self._grid().counts[0]) == [0, 1, 2, 3, 4]

	def test_inspect_reports_hours_and_percentage(self):
		report = self._grid().inspect(3, 0, hours_per_image=0.5)
		assert report.sunny_count == 3
		assert report.sun_hours == pytest.approx(1.5)
		assert report.total_hours == pytest.approx(2.0)
		assert report.daylight_percentage == pytest.approx(75.0)
		assert report.value == 191

	def test_inspect_outside_grid(self):
		with pytest.raises(IndexError):
			self._grid().inspect(5, 0)

	def test_legend_small_stack_lists_every_count(self):
		entries = self._grid().legend()
		assert [e.sunny_count for e in entries] == [4, 3, 2, 1, 0]
		assert [e.value for e in entries] == [255, 191, 128, 64, 0]

	def test_legend_large_stack_steps_down_from_the_top(self):
		grid = build([solid(1, 1, (0, 0, 0)) for _ in range(9)], 200)
		counts = [e.sunny_count for e in grid.legend()]
		assert counts == [9, 7, 5, 3, 1, 0]

	def test_legend_large_even_stack(self):
		grid = build([solid(1, 1, (0, 0, 0)) for _ in range(8)], 200)
		assert [e.sunny_count for e in grid.legend()] == [8, 6, 4, 2, 0]
		assert [e.sunny_count for e in grid.legend(every=3)] == [8, 5, 2, 0]

	def test_to_rgba_is_opaque_gray(self):
		rgba = self._grid().to_rgba()
		assert rgba.shape == (1, 5, 4)
		assert np.all(rgba[..., 3] == 255)
		assert np.array_equal(rgba[..., 0], rgba[..., 2])
		assert list(rgba[0, :, 1]) == [0, 64, 128, 191, 255]

	def test_from_values_round_trips(self):
		values = np.array([[0, 100], [200, 255]])
		grid = ExposureGrid.from_values(values)
		assert np.array_equal(grid.values, values)
		assert grid.n_images == 255
