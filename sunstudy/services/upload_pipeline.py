from __future__ import annotations
import logging
from typing import List, Dict, Any
from sunstudy.services.status_store import write_status, update_status
from sunstudy.services.loader import load_stack
from sunstudy.services.metadata import hours_per_image
from sunstudy.services.session import AccumulationPolicy, Session, SessionRegistry

logger = logging.getLogger(__name__)


def run_pipeline(session_id: str, files_meta: List[Dict[str, Any]], threshold: float, policy: str, registry: SessionRegistry) -> None:
	try:
		# 1) Decode uploads; failures are recorded, not fatal
		write_status(session_id, {"session_id": session_id, "status": "loading", "step": "Load Images", "total": len(files_meta), "loaded": 0, "failed": 0})

		def on_loaded(loaded: int, failed: int, total: int) -> None:
			update_status(session_id, loaded=loaded, failed=failed, total=total)

		stack = load_stack([(fm["filename"], fm["data"]) for fm in files_meta], on_progress=on_loaded)
		hpi = hours_per_image(stack.capture_times)

		validation = {
			"loaded": stack.loaded,
			"failed": [{"filename": name, "error": reason} for name, reason in stack.failed],
			"same_resolution": len(stack.sizes) <= 1,
			"unique_resolutions": ["{}x{}".format(w, h) for (w, h) in stack.sizes],
			"hours_per_image": hpi,
		}

		# 2) Aggregate the exposure grid, reporting row progress
		session = Session(stack.buffers, threshold=threshold, policy=AccumulationPolicy(policy), hours_per_image=hpi, session_id=session_id)
		write_status(session_id, {
			"session_id": session_id,
			"status": "aggregating",
			"step": "Build Exposure Grid",
			"order": stack.names,
			"validation": validation,
			"rows_done": 0,
		})

		def on_chunk(rows_done: int, total_rows: int) -> None:
			update_status(session_id, rows_done=rows_done, total_rows=total_rows)

		session.rebuild(on_chunk=on_chunk)
		registry.add(session)

		# 3) Complete
		write_status(session_id, {
			"session_id": session_id,
			"status": "completed",
			"step": "Done",
			"order": stack.names,
			"validation": validation,
			"session": session.summary(),
		})
	except Exception as e:
		logger.exception("Pipeline for session %s failed", session_id)
		update_status(session_id, status="error", error=str(e), error_type=type(e).__name__)
