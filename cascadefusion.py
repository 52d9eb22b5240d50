#!/usr/bin/env python3
import os
import sys
import time
import logging
import argparse
from typing import List, Optional, Sequence, Tuple

import cv2
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from basemodels import ImageContext
from combined_detector import CombinedDetector
from config import DEFAULT_CONFIG_PATH
from errors import CascadeFusionError
from metadata import load_detections, save_detections
from overlay import draw_detections, find_scale, overlay_summary

LOGGER = logging.getLogger("cascadefusion")

console = Console()

SUPPORTED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff", ".webp")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
        force=True,
    )


def human_ms(seconds: float) -> str:
    return f"{seconds * 1000:.1f} ms"


def parse_display_box(value: str) -> Tuple[int, int]:
    try:
        w, h = (int(v) for v in value.lower().split("x", 1))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got {value!r}")
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError(f"display box must be positive, got {value!r}")
    return w, h


def collect_images(paths: Sequence[str], recursive: bool = False) -> List[str]:
    images: List[str] = []
    for path in paths:
        if os.path.isdir(path):
            if recursive:
                for root, dirs, files in os.walk(path):
                    dirs.sort()
                    images.extend(os.path.join(root, f) for f in sorted(files)
                                  if f.lower().endswith(SUPPORTED_EXTENSIONS))
            else:
                images.extend(os.path.join(path, f) for f in sorted(os.listdir(path))
                              if f.lower().endswith(SUPPORTED_EXTENSIONS)
                              and os.path.isfile(os.path.join(path, f)))
        else:
            # explicit files are passed through and rejected later if unreadable
            images.append(path)
    return images


def write_overlay(ctx: ImageContext, output_dir: str, max_display: Tuple[int, int]) -> Optional[str]:
    frame = cv2.imread(ctx.path, cv2.IMREAD_COLOR)
    if frame is None or ctx.detections is None:
        return None
    h, w = frame.shape[:2]
    scale = find_scale(w, h, *max_display)
    out = overlay_summary(draw_detections(frame, ctx.detections, scale), ctx.detections)

    os.makedirs(output_dir, exist_ok=True)
    stem = os.path.splitext(ctx.name)[0]
    out_path = os.path.join(output_dir, f"{stem}_detections.png")
    cv2.imwrite(out_path, out)
    return out_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Multi-classifier cascade detection with duplicate fusion.")
    parser.add_argument("paths", nargs="+", help="Image files or folders")
    parser.add_argument("--recursive", action="store_true", help="Descend into sub-folders")
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to classifiers.yaml (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--no-verify", action="store_true", help="Skip verifier classifiers")
    parser.add_argument("--use-metadata", action="store_true",
                        help="Merge detections stored next to each image")
    parser.add_argument("--save-metadata", action="store_true",
                        help="Store detections next to each image")
    parser.add_argument("--output-dir", default=None, help="Write annotated images here")
    parser.add_argument("--max-display", type=parse_display_box, default=(1280, 720),
                        help="Annotated image box as WIDTHxHEIGHT (default: 1280x720)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    console.print(f"Using config: [bold]{args.config}[/bold]")
    try:
        detector = CombinedDetector.from_config(args.config)
    except CascadeFusionError as exc:
        LOGGER.error("%s", exc)
        return 1
    if args.no_verify:
        detector.use_verification = False

    images = collect_images(args.paths, args.recursive)
    if not images:
        LOGGER.warning("No images found in %s", ", ".join(args.paths))
        return 0

    table = Table(title="Detections")
    table.add_column("Image")
    table.add_column("Detections", justify="right")
    table.add_column("Labels")
    table.add_column("Time", justify="right")

    failures: List[Tuple[str, str]] = []
    with detector:
        for path in images:
            ctx = ImageContext(path=path)
            t0 = time.perf_counter()
            try:
                if args.use_metadata:
                    ctx.detections = load_detections(path)
                count = detector.detect(ctx)
            except CascadeFusionError as exc:
                failures.append((path, str(exc)))
                table.add_row(ctx.name, "[red]failed[/red]", "", human_ms(time.perf_counter() - t0))
                continue
            elapsed = time.perf_counter() - t0

            if args.save_metadata:
                save_detections(ctx)
            if args.output_dir:
                write_overlay(ctx, args.output_dir, args.max_display)

            labels = ", ".join(ctx.detections.labels) if ctx.detections is not None else ""
            table.add_row(ctx.name, str(count), labels, human_ms(elapsed))

    console.print(table)

    if failures:
        for path, reason in failures:
            LOGGER.error("%s: %s", path, reason)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
