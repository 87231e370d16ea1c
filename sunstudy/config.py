"""
Configuration constants for the sun study service.

Environment overrides:
	SUNSTUDY_JOBS_DIR: where build status records are written.
	SUNSTUDY_CHUNK_ROWS: rows aggregated between scheduler yields.
	SUNSTUDY_CORS_ORIGINS: comma-separated origins allowed by the HTTP API.
"""
from __future__ import annotations

import os
from pathlib import Path

# Brightness threshold (luma, 0..255) above which a pixel counts as sunny
DEFAULT_THRESHOLD = 200
THRESHOLD_MIN = 0
THRESHOLD_MAX = 255
THRESHOLD_STEP = 10

# Garden bed footprint: 8ft x 4ft at 192px per 19ft
PIXELS_PER_FOOT = 192.0 / 19.0
DEFAULT_BED_FEET = (8.0, 4.0)
FOOTPRINT_STEP_PX = 5
FOOTPRINT_MIN_PX = 1

# Aggregation
DEFAULT_CHUNK_ROWS = int(os.environ.get("SUNSTUDY_CHUNK_ROWS", "64"))

# Hill climbing plateau tie-break (Gaussian sigma bounds, in pixels)
PLATEAU_SIGMA_MIN = 1.0
PLATEAU_SIGMA_MAX = 16.0

# One source image stands for this many hours unless EXIF says otherwise
DEFAULT_HOURS_PER_IMAGE = 1.0

SUPPORTED_IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".tif", ".tiff", ".bmp", ".webp"}

JOBS_DIR = Path(os.environ.get("SUNSTUDY_JOBS_DIR", "jobs"))

# Comma-separated origins allowed to call the HTTP API
CORS_ORIGINS = [o.strip() for o in os.environ.get("SUNSTUDY_CORS_ORIGINS", "*").split(",") if o.strip()]
