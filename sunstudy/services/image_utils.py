from __future__ import annotations
from io import BytesIO
import numpy as np
from PIL import Image

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = (0.299, 0.587, 0.114)


# EXIF Orientation tag (0x0112) -> transpose that displays the image upright
_ORIENTATION_TRANSPOSE = {
	2: Image.Transpose.FLIP_LEFT_RIGHT,
	3: Image.Transpose.ROTATE_180,
	4: Image.Transpose.FLIP_TOP_BOTTOM,
	5: Image.Transpose.TRANSPOSE,
	6: Image.Transpose.ROTATE_270,
	7: Image.Transpose.TRANSVERSE,
	8: Image.Transpose.ROTATE_90,
}
EXIF_ORIENTATION = 0x0112


def apply_exif_orientation(img: Image.Image, exif) -> Image.Image:
	"""Rotate/flip `img` upright; unknown or missing orientations leave it as is."""
	if not exif:
		return img
	try:
		o = int(exif.get(EXIF_ORIENTATION, 1))
	except (TypeError, ValueError):
		return img
	method = _ORIENTATION_TRANSPOSE.get(o)
	return img.transpose(method) if method is not None else img


def to_pixel_buffer(img: Image.Image) -> np.ndarray:
	"""
	Convert a PIL image to a read-only RGBA uint8 array [H,W,4].
	"""
	if img.mode != "RGBA":
		img = img.convert("RGBA")
	arr = np.array(img, dtype=np.uint8)
	arr.setflags(write=False)
	return arr


def luma(rgb: np.ndarray) -> np.ndarray:
	"""
	Perceptual brightness of an [...,3|4] 8-bit array, alpha ignored.
	Computed in float64 so the strict threshold comparison is exact for integer thresholds.
	"""
	r = rgb[..., 0].astype(np.float64)
	g = rgb[..., 1].astype(np.float64)
	b = rgb[..., 2].astype(np.float64)
	return LUMA_WEIGHTS[0] * r + LUMA_WEIGHTS[1] * g + LUMA_WEIGHTS[2] * b


def rgba_to_png_bytes(rgba: np.ndarray) -> bytes:
	buf = BytesIO()
	Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8)).save(buf, format="PNG", optimize=True)
	return buf.getvalue()
