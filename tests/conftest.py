from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from sunstudy.services import status_store


def solid(width, height, rgb, alpha=255):
	"""RGBA buffer filled with one color."""
	buf = np.empty((height, width, 4), dtype=np.uint8)
	buf[..., :3] = rgb
	buf[..., 3] = alpha
	return buf


def png_bytes(buf):
	out = BytesIO()
	Image.fromarray(buf).save(out, format="PNG")
	return out.getvalue()


@pytest.fixture(autouse=True)
def jobs_dir(tmp_path, monkeypatch):
	path = tmp_path / "jobs"
	monkeypatch.setattr(status_store, "JOBS_DIR", path)
	return path


@pytest.fixture
def rng():
	return np.random.default_rng(1234)


@pytest.fixture
def random_stack(rng):
	return [rng.integers(0, 256, size=(12, 9, 4), dtype=np.uint8) for _ in range(7)]
