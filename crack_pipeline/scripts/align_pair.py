"""
Align Pair - offline crack change detection

Registers the current photo onto the reference photo (ORB + RANSAC homography)
and writes the reference with changed regions highlighted.

    python -m crack_pipeline.scripts.align_pair --reference a.jpg --current b.jpg --output diff.png
"""


from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from crack_api.config import settings
from crack_api.services.capability import CapabilityLoader
from crack_api.services.errors import AlignerError
from crack_api.services.image_utils import encode_png
from crack_api.services.pipeline import run_from_locators


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Highlight changes between two photos of the same structure")
    parser.add_argument("--reference", required=True, help="First (reference) photo: path or URL")
    parser.add_argument("--current", required=True, help="Later photo to align onto the reference: path or URL")
    parser.add_argument("--output", required=True, help="Where to write the overlay PNG")
    parser.add_argument("--max-dimension", type=int, default=None, help="Working resolution bound (default from settings)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else settings.LOG_LEVEL)

    cfg = settings
    if args.max_dimension is not None:
        cfg = settings.model_copy(update={"MAX_DIMENSION": args.max_dimension})

    engine_errors: List[AlignerError] = []
    CapabilityLoader(module_name=cfg.ENGINE_MODULE, background=False).ensure_ready(lambda: None, engine_errors.append)
    if engine_errors:
        print(f"Failed ({engine_errors[0].kind}): {engine_errors[0].message}", file=sys.stderr)
        return 1

    try:
        overlay = run_from_locators(args.reference, args.current, cfg)
    except AlignerError as e:
        print(f"Failed ({e.kind}): {e.message}", file=sys.stderr)
        return 1

    out_path = Path(args.output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(encode_png(overlay))
    print(f"Saved: {out_path} ({overlay.width}x{overlay.height})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
