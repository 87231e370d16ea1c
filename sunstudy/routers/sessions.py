from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from pathlib import Path
import uuid
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel

from sunstudy.config import DEFAULT_THRESHOLD
from sunstudy.services.errors import GridNotReady, SunStudyError
from sunstudy.services.image_utils import rgba_to_png_bytes
from sunstudy.services.session import AccumulationPolicy, Session, SessionRegistry
from sunstudy.services.status_store import drop_status, read_status, write_status
from sunstudy.services.upload_pipeline import run_pipeline


router = APIRouter(prefix="/sessions", tags=["sessions"])

_registry = SessionRegistry()


def get_registry() -> SessionRegistry:
	return _registry


class ThresholdCommand(BaseModel):
	delta: Optional[int] = None
	value: Optional[int] = None


class FootprintCommand(BaseModel):
	action: Literal["flip", "grow", "shrink", "set"]
	width: Optional[float] = None
	height: Optional[float] = None


class SearchRequest(BaseModel):
	x: float
	y: float
	plateau: bool = True


def _slugify(text: str) -> str:
	return "".join(ch if (ch.isalnum() or ch in ("-", "_")) else "-" for ch in text).strip("-_").lower()


def _session(registry: SessionRegistry, session_id: str) -> Session:
	try:
		return registry.get(session_id)
	except KeyError:
		raise HTTPException(status_code=404, detail=f"Unknown session {session_id}")


def _bad_request(e: Exception) -> HTTPException:
	if isinstance(e, GridNotReady):
		return HTTPException(status_code=409, detail=str(e))
	return HTTPException(status_code=400, detail=str(e))


@router.post("/upload", summary="Upload a time-lapse stack and start building the exposure grid")
async def upload(
	background_tasks: BackgroundTasks,
	files: List[UploadFile] = File(...),
	threshold: int = Form(DEFAULT_THRESHOLD),
	policy: AccumulationPolicy = Form(AccumulationPolicy.ALL),
	registry: SessionRegistry = Depends(get_registry),
):
	files_meta = []
	for f in files:
		data = await f.read()
		files_meta.append({"filename": f.filename or "image.png", "data": data})
	filenames = [m["filename"] for m in files_meta]
	# "<first_filename_stem>_<ddmmyyyy>_<short uuid>"
	first_stem = _slugify(Path(filenames[0]).stem) if filenames else "study"
	date_str = datetime.now().strftime("%d%m%Y")
	session_id = f"{first_stem or 'study'}_{date_str}_{uuid.uuid4().hex[:8]}"
	write_status(session_id, {"session_id": session_id, "status": "queued", "step": "Queued"})
	background_tasks.add_task(run_pipeline, session_id, files_meta, threshold, policy.value, registry)
	return {
		"session_id": session_id,
		"status": "queued",
		"num_files": len(files_meta),
		"filenames": filenames,
		"status_endpoint": f"/sessions/{session_id}/status",
	}


@router.get("/{session_id}/status", summary="Get loading/aggregation status")
def status(session_id: str):
	return read_status(session_id)


@router.get("/{session_id}", summary="Session summary")
def summary(session_id: str, registry: SessionRegistry = Depends(get_registry)):
	return _session(registry, session_id).summary()


@router.delete("/{session_id}", summary="End a session")
def end_session(session_id: str, registry: SessionRegistry = Depends(get_registry)):
	if registry.drop(session_id) is None:
		raise HTTPException(status_code=404, detail=f"Unknown session {session_id}")
	drop_status(session_id)
	return {"session_id": session_id, "status": "closed"}


@router.post("/{session_id}/threshold", summary="Adjust the brightness threshold and rebuild")
def threshold(session_id: str, cmd: ThresholdCommand, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	if cmd.value is None and cmd.delta is None:
		raise HTTPException(status_code=422, detail="Provide either 'value' or 'delta'")
	target = cmd.value if cmd.value is not None else session.threshold + cmd.delta
	try:
		session.set_threshold(target)
	except SunStudyError as e:
		raise _bad_request(e)
	return session.summary()


@router.post("/{session_id}/footprint", summary="Flip, grow, shrink or set the rectangle footprint")
def footprint(session_id: str, cmd: FootprintCommand, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	if cmd.action == "flip":
		fp = session.flip_footprint()
	elif cmd.action == "grow":
		fp = session.grow_footprint()
	elif cmd.action == "shrink":
		fp = session.shrink_footprint()
	else:
		if cmd.width is None or cmd.height is None:
			raise HTTPException(status_code=422, detail="'set' needs width and height")
		fp = session.resize_footprint(cmd.width, cmd.height)
	return {"width": fp.width, "height": fp.height}


@router.get("/{session_id}/score", summary="Score the footprint centered at a point")
def score_at(session_id: str, x: float, y: float, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	try:
		return session.evaluate(x, y).to_dict()
	except SunStudyError as e:
		raise _bad_request(e)


@router.post("/{session_id}/search", summary="Hill-climb from a seed point")
def search(session_id: str, req: SearchRequest, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	try:
		placement, recorded = session.search(req.x, req.y, plateau=req.plateau)
	except SunStudyError as e:
		raise _bad_request(e)
	out = placement.to_dict()
	out["recorded"] = recorded
	return out


@router.get("/{session_id}/placements", summary="Placements recorded so far")
def placements(session_id: str, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	best = session.placements.best()
	return {
		"placements": [p.to_dict() for p in session.placements],
		"best": best.to_dict() if best is not None else None,
	}


@router.get("/{session_id}/placements.csv", summary="Placements as CSV")
def placements_csv(session_id: str, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	csv_text = session.placements.to_frame().to_csv(index=False)
	return Response(content=csv_text, media_type="text/csv")


@router.get("/{session_id}/pixel", summary="Sun hours and daylight share at a pixel")
def pixel(session_id: str, x: int, y: int, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	try:
		report = session.inspect(x, y)
	except IndexError as e:
		raise HTTPException(status_code=400, detail=str(e))
	except SunStudyError as e:
		raise _bad_request(e)
	return asdict(report)


@router.get("/{session_id}/legend", summary="Legend stops from always sunny to never sunny")
def legend(session_id: str, every: Optional[int] = None, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	try:
		entries = session.legend(every=every)
	except SunStudyError as e:
		raise _bad_request(e)
	return {"entries": [asdict(e) for e in entries]}


@router.get("/{session_id}/heatmap.png", summary="Exposure grid as a PNG")
def heatmap_png(session_id: str, registry: SessionRegistry = Depends(get_registry)):
	session = _session(registry, session_id)
	try:
		rgba = session.export_rgba()
	except SunStudyError as e:
		raise _bad_request(e)
	return Response(content=rgba_to_png_bytes(rgba), media_type="image/png")
