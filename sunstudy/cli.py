from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from sunstudy.config import DEFAULT_THRESHOLD
from sunstudy.services.errors import OutOfBoundsPlacement
from sunstudy.services.image_utils import rgba_to_png_bytes
from sunstudy.services.loader import load_folder
from sunstudy.services.metadata import hours_per_image
from sunstudy.services.placement import Footprint
from sunstudy.services.session import AccumulationPolicy, Session


def _pair(text: str) -> Tuple[float, float]:
	try:
		a, b = text.split(",")
		return float(a), float(b)
	except ValueError:
		raise argparse.ArgumentTypeError(f"Expected 'A,B', got {text!r}")


def _args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(description="Build a sun exposure heat map from a folder of time-lapse frames")
	parser.add_argument("--input", required=True, help="Folder containing one aligned time-lapse stack")
	parser.add_argument("--output", required=True, help="Path of the heat map PNG to write")
	parser.add_argument("--threshold", type=int, default=DEFAULT_THRESHOLD, help="Luma above which a pixel counts as sunny (0-255)")
	parser.add_argument("--footprint", type=_pair, default=None, help="Bed footprint in pixels as W,H (default 8ft x 4ft)")
	parser.add_argument("--seed", type=_pair, action="append", default=[], help="Hill-climb seed point X,Y (repeatable)")
	parser.add_argument("--policy", choices=[p.value for p in AccumulationPolicy], default=AccumulationPolicy.ALL.value)
	parser.add_argument("--csv", default=None, help="Write recorded placements to this CSV file")
	parser.add_argument("--chunk-rows", type=int, default=None)
	parser.add_argument("--workers", type=int, default=1)
	return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
	logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)-8s  %(message)s", datefmt="%H:%M:%S")
	args = _args(argv)

	stack = load_folder(Path(args.input))
	if not stack.loaded:
		raise SystemExit(f"No readable images found in: {args.input}")
	for name, reason in stack.failed:
		print(f"Skipped: {name} ({reason})")

	footprint = Footprint.of(*args.footprint) if args.footprint else None
	session = Session(
		stack.buffers,
		threshold=args.threshold,
		footprint=footprint,
		policy=AccumulationPolicy(args.policy),
		hours_per_image=hours_per_image(stack.capture_times),
		chunk_rows=args.chunk_rows,
		workers=args.workers,
	)
	session.rebuild()

	out_path = Path(args.output)
	out_path.parent.mkdir(parents=True, exist_ok=True)
	out_path.write_bytes(rgba_to_png_bytes(session.export_rgba()))
	print(f"Saved: {out_path}")

	results: List[str] = []
	for x, y in args.seed:
		try:
			placement, recorded = session.search(x, y)
		except OutOfBoundsPlacement as e:
			results.append(f"seed ({x:g}, {y:g}) skipped: {e}")
			continue
		r = placement.rectangle
		results.append(
			f"seed ({x:g}, {y:g}) -> ({r.cx}, {r.cy}) {r.width}x{r.height}: "
			f"score {placement.score}, {placement.percentage:.1f}% sun, {placement.steps} steps"
			+ ("" if recorded else " (not recorded)")
		)
	for line in results:
		print(line)

	if args.csv:
		session.placements.to_frame().to_csv(args.csv, index=False)
		print(f"Saved: {args.csv}")
	return 0


if __name__ == "__main__":
	raise SystemExit(main())
