from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Any

from sunstudy.config import JOBS_DIR


def _status_path(session_id: str) -> Path:
	JOBS_DIR.mkdir(parents=True, exist_ok=True)
	return JOBS_DIR / f"{session_id}.json"


def write_status(session_id: str, data: Dict[str, Any]) -> None:
	status_path = _status_path(session_id)
	tmp_path = status_path.with_suffix(".json.tmp")
	with tmp_path.open("w", encoding="utf-8") as f:
		json.dump(data, f, indent=2)
	tmp_path.replace(status_path)


def update_status(session_id: str, **fields: Any) -> Dict[str, Any]:
	data = read_status(session_id)
	data.update(fields)
	write_status(session_id, data)
	return data


def read_status(session_id: str) -> Dict[str, Any]:
	status_path = _status_path(session_id)
	if not status_path.exists():
		return {"session_id": session_id, "status": "unknown"}
	with status_path.open("r", encoding="utf-8") as f:
		return json.load(f)


def drop_status(session_id: str) -> None:
	_status_path(session_id).unlink(missing_ok=True)
