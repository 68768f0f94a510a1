#!/usr/bin/env python3
"""Command-line interface for the card scanner."""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from rich.console import Console

from cardscan.catalog_client import CandidateRetriever, CatalogClient
from cardscan.config import load_config
from cardscan.display import ScanDisplay
from cardscan.errors import CameraAccessError, EngineLoadError
from cardscan.frame_source import CameraFrameSource, StaticFrameSource, VideoFileFrameSource
from cardscan.models import PassOutcome
from cardscan.ocr_engine import OCREngine
from cardscan.profiler import profiler
from cardscan.scan_controller import ScanController
from cardscan.text_recognizer import TextRecognizer
from cardscan.visual_matcher import VisualMatcher

logger = logging.getLogger(__name__)


def _suppress_logging():
    """Keep library logging from writing over the rich live display."""
    null_handler = logging.NullHandler()
    for logger_name in ['cardscan', 'easyocr']:
        lib_logger = logging.getLogger(logger_name)
        lib_logger.setLevel(logging.CRITICAL)
        lib_logger.handlers = [null_handler]
        lib_logger.propagate = False


def parse_roi(value: str) -> List[float]:
    """Parse "TOP,LEFT,WIDTH,HEIGHT" fractions."""
    parts = [p.strip() for p in value.split(',')]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("ROI must be four comma-separated fractions: TOP,LEFT,WIDTH,HEIGHT")
    try:
        fractions = [float(p) for p in parts]
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid ROI value: {e}") from e
    if any(f < 0 or f > 1 for f in fractions):
        raise argparse.ArgumentTypeError("ROI fractions must be between 0 and 1")
    return fractions


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Identify trading cards from a camera feed using OCR and image matching",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scan with the default webcam:
  cardscan --api-key YOUR_KEY

  # Use a second camera and only show foil prices:
  cardscan --camera 1 --printing Foil

  # Identify a single photo and exit:
  cardscan --image card.jpg --once

  # Replay a recording with a custom name region and no image matching:
  cardscan --video clip.mp4 --roi 0.05,0.1,0.8,0.15 --no-visual
        """
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--camera", type=int, default=None, help="Camera device index (default: 0)")
    source.add_argument("--video", type=str, default=None, help="Replay a video file instead of a camera")
    source.add_argument("--image", type=str, default=None, help="Scan a still image")

    parser.add_argument("--api-key", type=str, default=None, help="Catalog API key (or set JUSTTCG_API_KEY)")
    parser.add_argument("--config", type=str, default=None, help="Path to JSON file with scan settings")
    parser.add_argument("--condition", type=str, default=None, help="Condition filter for prices (default: NM)")
    parser.add_argument("--printing", type=str, default=None, help="Printing filter, e.g. Normal or Foil")
    parser.add_argument("--roi", type=parse_roi, default=None, help="Name region as TOP,LEFT,WIDTH,HEIGHT fractions")
    parser.add_argument("--no-visual", action="store_true", help="Disable image feature matching")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between scheduled passes (default: 0.4)")
    parser.add_argument("--cooldown", type=float, default=None, help="Minimum seconds between passes (default: 1.2)")
    parser.add_argument("--ocr-device", type=str, default="auto", choices=["auto", "gpu", "cpu"], help="Force OCR device usage (default: auto)")
    parser.add_argument("--once", action="store_true", help="Exit after the first match")
    parser.add_argument("--profile", type=str, default=None, help="Enable profiling and write to specified JSON file")
    parser.add_argument("--verbose", action="store_true", help="Plain log output instead of the live display")
    return parser


def build_controller(args, scan_config) -> ScanController:
    if args.image:
        frame_source = StaticFrameSource.from_files([Path(args.image).expanduser()],
                                                    frame_width=scan_config["frame_width"])
    elif args.video:
        frame_source = VideoFileFrameSource(Path(args.video).expanduser(),
                                            interval_seconds=scan_config["interval"],
                                            frame_width=scan_config["frame_width"])
    else:
        frame_source = CameraFrameSource(
            device=scan_config["camera_index"],
            width=scan_config["camera_width"],
            height=scan_config["camera_height"],
            frame_width=scan_config["frame_width"],
        )

    engine = OCREngine(gpu=scan_config["gpu"], min_confidence=scan_config["min_confidence"])
    recognizer = TextRecognizer(
        engine,
        min_name_length=scan_config["min_name_length"],
        min_full_frame_line=scan_config["min_full_frame_line"],
    )
    client = CatalogClient(api_key=args.api_key)
    retriever = CandidateRetriever(
        client,
        limit=scan_config["search_limit"],
        include_images=scan_config["visual_enabled"],
    )

    matcher = None
    if scan_config["visual_enabled"]:
        matcher = VisualMatcher(
            scale=scan_config["feature_scale"],
            n_features=scan_config["orb_features"],
            ratio=scan_config["ratio_test"],
            good_match_norm=scan_config["good_match_norm"],
            timeout=scan_config["fetch_timeout"],
            workers=scan_config["fetch_workers"],
            cache_size=scan_config["descriptor_cache_size"],
        )

    return ScanController(frame_source, recognizer, retriever, visual_matcher=matcher, scan_config=scan_config)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    console = Console(stderr=True)

    gpu = None
    if args.ocr_device == "gpu":
        gpu = True
    elif args.ocr_device == "cpu":
        gpu = False

    overrides = {
        "camera_index": args.camera,
        "condition": args.condition,
        "printing": args.printing,
        "roi": args.roi,
        "interval": args.interval,
        "cooldown": args.cooldown,
        "gpu": gpu,
        "visual_enabled": False if args.no_visual else None,
    }
    try:
        scan_config = load_config(Path(args.config) if args.config else None, overrides)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    else:
        _suppress_logging()

    if args.profile:
        profiler.enable(args.profile)

    try:
        controller = build_controller(args, scan_config)
    except (ValueError, CameraAccessError) as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1

    display = None
    if not args.verbose:
        display = ScanDisplay(condition=scan_config["condition"], printing=scan_config["printing"])
        controller.subscribe(display.update)
        display.start()

    finished = threading.Event()

    def on_status(status):
        if args.once and status.last_outcome == PassOutcome.MATCHED:
            finished.set()
        elif args.verbose:
            console.print(f"[dim]{status.state.value}:[/dim] {status.status_message}")
    controller.subscribe(on_status)

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: finished.set())
    exit_code = 0
    start_error = None
    try:
        controller.start()
        while not finished.wait(0.5):
            pass
    except (EngineLoadError, CameraAccessError) as e:
        exit_code = 1
        start_error = str(e)
        if display:
            display.add_log(f"ERROR: {e}")
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        controller.close()
        if display:
            display.stop()
        if args.profile:
            profiler.save_results()

    status = controller.status
    if exit_code:
        console.print(f"[red]Error:[/red] {start_error}")
    elif status.last_match is not None:
        match = status.last_match
        price = f"{match.price.price:.2f}" if match.price and match.price.price is not None else "—"
        Console().print(f"[green]✓[/green] {match.record.name} · {match.record.set_name or '—'} "
                        f"#{match.record.number or '—'} · {price}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
