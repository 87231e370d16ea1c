"""
End-to-end tests of the HTTP service using FastAPI's TestClient.
Background tasks run before the upload response returns, so status is final.
"""

from io import BytesIO

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from conftest import png_bytes, solid
from sunstudy.main import create_app
from sunstudy.routers.sessions import get_registry
from sunstudy.services.session import SessionRegistry


def frames():
	"""Six 30x20 frames; the right half is sunny in every one."""
	out = []
	for _ in range(6):
		f = solid(30, 20, (20, 20, 20))
		f[:, 15:, :3] = 240
		out.append(f)
	return out


@pytest.fixture
def registry():
	return SessionRegistry()


@pytest.fixture
def client(registry):
	app = create_app()
	app.dependency_overrides[get_registry] = lambda: registry
	return TestClient(app)


def upload(client, buffers, **form):
	files = [("files", (f"frame_{i:02d}.png", png_bytes(b), "image/png")) for i, b in enumerate(buffers)]
	res = client.post("/sessions/upload", files=files, data=form)
	assert res.status_code == 200
	return res.json()["session_id"]


@pytest.fixture
def session_id(client):
	return upload(client, frames())


class TestUpload:

	def test_upload_completes(self, client, session_id, registry):
		status = client.get(f"/sessions/{session_id}/status").json()
		assert status["status"] == "completed"
		assert status["validation"]["loaded"] == 6
		assert status["validation"]["same_resolution"] is True
		assert status["session"]["width"] == 30
		assert session_id in registry

	def test_session_id_uses_first_filename(self, session_id):
		assert session_id.startswith("frame_00_")

	def test_corrupt_file_is_reported(self, client):
		files = [
			("files", ("good.png", png_bytes(solid(4, 4, (0, 0, 0))), "image/png")),
			("files", ("bad.png", b"garbage", "image/png")),
		]
		sid = client.post("/sessions/upload", files=files).json()["session_id"]
		status = client.get(f"/sessions/{sid}/status").json()
		assert status["status"] == "completed"
		assert [f["filename"] for f in status["validation"]["failed"]] == ["bad.png"]

	def test_mismatched_sizes_fail_the_build(self, client, registry):
		sid = upload(client, [solid(4, 4, (0, 0, 0)), solid(5, 4, (0, 0, 0))])
		status = client.get(f"/sessions/{sid}/status").json()
		assert status["status"] == "error"
		assert status["error_type"] == "DimensionMismatchError"
		assert sid not in registry

	def test_unknown_status(self, client):
		assert client.get("/sessions/nope/status").json()["status"] == "unknown"


class TestSessionEndpoints:

	def test_summary_and_unknown_session(self, client, session_id):
		assert client.get(f"/sessions/{session_id}").json()["n_images"] == 6
		assert client.get("/sessions/nope").status_code == 404
		assert client.post("/sessions/nope/search", json={"x": 1, "y": 1}).status_code == 404

	def test_threshold(self, client, session_id):
		res = client.post(f"/sessions/{session_id}/threshold", json={"delta": 10})
		assert res.json()["threshold"] == 210
		res = client.post(f"/sessions/{session_id}/threshold", json={"value": 999})
		assert res.json()["threshold"] == 255
		assert client.post(f"/sessions/{session_id}/threshold", json={}).status_code == 422

	def test_footprint(self, client, session_id):
		res = client.post(f"/sessions/{session_id}/footprint", json={"action": "set", "width": 6, "height": 2})
		assert res.json() == {"width": 6, "height": 2}
		res = client.post(f"/sessions/{session_id}/footprint", json={"action": "flip"})
		assert res.json() == {"width": 2, "height": 6}
		res = client.post(f"/sessions/{session_id}/footprint", json={"action": "grow"})
		assert res.json() == {"width": 7, "height": 11}
		assert client.post(f"/sessions/{session_id}/footprint", json={"action": "set"}).status_code == 422

	def test_score_and_search(self, client, session_id):
		client.post(f"/sessions/{session_id}/footprint", json={"action": "set", "width": 4, "height": 4})
		scored = client.get(f"/sessions/{session_id}/score", params={"x": 5, "y": 10}).json()
		assert scored["score"] == 0

		res = client.post(f"/sessions/{session_id}/search", json={"x": 5, "y": 10})
		assert res.status_code == 200
		body = res.json()
		assert body["recorded"] is True
		assert body["score"] == 16 * 255
		assert body["percentage"] == pytest.approx(100.0)

	def test_search_off_grid(self, client, session_id):
		res = client.post(f"/sessions/{session_id}/search", json={"x": -500, "y": -500})
		assert res.status_code == 400

	def test_placements(self, client, session_id):
		client.post(f"/sessions/{session_id}/footprint", json={"action": "set", "width": 2, "height": 2})
		client.post(f"/sessions/{session_id}/search", json={"x": 25, "y": 10})
		client.post(f"/sessions/{session_id}/search", json={"x": 20, "y": 5})
		body = client.get(f"/sessions/{session_id}/placements").json()
		assert len(body["placements"]) == 2
		assert body["best"]["percentage"] == pytest.approx(100.0)

		csv_text = client.get(f"/sessions/{session_id}/placements.csv").text
		lines = csv_text.strip().splitlines()
		assert lines[0] == "cx,cy,width,height,score,percentage,steps"
		assert len(lines) == 3

	def test_pixel(self, client, session_id):
		report = client.get(f"/sessions/{session_id}/pixel", params={"x": 20, "y": 3}).json()
		assert report["sunny_count"] == 6
		assert report["value"] == 255
		assert client.get(f"/sessions/{session_id}/pixel", params={"x": 30, "y": 0}).status_code == 400

	def test_legend(self, client, session_id):
		entries = client.get(f"/sessions/{session_id}/legend").json()["entries"]
		assert entries[0]["value"] == 255
		assert entries[-1]["value"] == 0
		assert len(entries) == 7

	def test_heatmap_png(self, client, session_id):
		res = client.get(f"/sessions/{session_id}/heatmap.png")
		assert res.headers["content-type"] == "image/png"
		img = np.array(Image.open(BytesIO(res.content)))
		assert img.shape == (20, 30, 4)
		assert img[0, 0, 0] == 0
		assert img[0, 29, 0] == 255

	def test_end_session(self, client, session_id, registry):
		assert client.delete(f"/sessions/{session_id}").json()["status"] == "closed"
		assert session_id not in registry
		assert client.delete(f"/sessions/{session_id}").status_code == 404
