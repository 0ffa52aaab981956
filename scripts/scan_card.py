#!/usr/bin/env python3
"""Scan a payment card from a camera, a video file or still images.

Frames are cropped to the card-shaped region of interest, preprocessed on
every third frame, read with EasyOCR and merged into one record per card
number.  By default the scan stops once a card number and expiry are found.

Usage:
    python scripts/scan_card.py --device 0
    python scripts/scan_card.py --video card.mp4 --screen 390x844
    python scripts/scan_card.py --images front1.jpg front2.jpg --no-stop
    python scripts/scan_card.py --video card.mp4 --roi 10,300,370,233 --output results.json
    python scripts/scan_card.py --device 0 --settings settings.json --gpu --verbose
    python scripts/scan_card.py --images front.jpg --save-last crop.png
"""

import argparse
import logging
import sys
from pathlib import Path

import cv2

# Add src to path for local imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from cardscan.capture import ArrayFrameSource, VideoFrameSource
from cardscan.config import ScanSettings
from cardscan.geometry import CoordinateSpace, Rect, Size
from cardscan.recognition import EasyOCREngine
from cardscan.session import ScanSession


def parse_screen(value: str) -> Size:
    """Parse ``WxH`` into a Size."""
    try:
        w, h = value.lower().split("x")
        return Size(float(w), float(h))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected WxH, got {value!r}")


def parse_roi(value: str) -> Rect:
    """Parse ``x,y,w,h`` (screen points) into a screen-space Rect."""
    parts = value.split(",")
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(f"Expected x,y,w,h, got {value!r}")
    try:
        x, y, w, h = (float(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected numbers in x,y,w,h, got {value!r}")
    return Rect(x, y, w, h, CoordinateSpace.SCREEN)


def summarize(session: ScanSession) -> None:
    stats = session.get_stats()
    print("\n" + "=" * 70)
    print("SUMMARY")
    print("=" * 70)
    print(f"Frames processed: {stats['frames']}")
    print(f"  Heavy preprocessing: {stats['heavy']}")
    print(f"  Light (crop + resize only): {stats['light']}")
    print(f"  Recognition failures: {stats['recognition_failed']}")
    print(f"Tokens kept/dropped: {stats['recognition']['kept']}/{stats['recognition']['dropped']}")
    print(f"Results emitted: {stats['results']}")
    if stats["dropped_results"]:
        print(f"  Dropped unread: {stats['dropped_results']}")

    final = session.final_results
    print(f"\nCards found: {len(final)}")
    for result in final.values():
        expiry = result.expiry_date or "--/--"
        network = result.issuing_network or "unknown network"
        name = result.holder_name or "(no name)"
        print(f"  ****{result.card_number[-4:]}  {expiry}  {network}  {name}")


def main():
    parser = argparse.ArgumentParser(description="Scan payment card details from frames")
    source_group = parser.add_mutually_exclusive_group(required=True)
    source_group.add_argument(
        "--device",
        type=int,
        help="Camera device index",
    )
    source_group.add_argument(
        "--video",
        type=str,
        help="Path to input video",
    )
    source_group.add_argument(
        "--images",
        type=str,
        nargs="+",
        help="Paths to still images, processed in order",
    )
    parser.add_argument(
        "--screen",
        type=parse_screen,
        default=Size(390.0, 844.0),
        help="Screen size the ROI is expressed in, as WxH (default: 390x844)",
    )
    parser.add_argument(
        "--roi",
        type=parse_roi,
        default=None,
        help="Region of interest as x,y,w,h in screen points (default: centered card box)",
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=None,
        help="JSON file with scan settings",
    )
    parser.add_argument(
        "--gpu",
        action="store_true",
        help="Run EasyOCR on the GPU",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write the final results to this JSON file",
    )
    parser.add_argument(
        "--save-last",
        type=str,
        default=None,
        help="Write the last cropped analysis image to this file",
    )
    parser.add_argument(
        "--no-stop",
        action="store_true",
        help="Keep scanning after a card number and expiry are found",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = ScanSettings.from_file(args.settings) if args.settings else ScanSettings()
    if args.no_stop:
        settings = settings.with_overrides(stop_on_complete=False)

    if args.images:
        source = ArrayFrameSource.from_files(args.images, args.screen)
        print(f"Images: {len(source.images)}")
    else:
        source = VideoFrameSource(args.device if args.video is None else args.video, args.screen)

    print(f"Initializing EasyOCR (gpu={args.gpu})...")
    engine = EasyOCREngine(languages=settings.languages, gpu=args.gpu)

    session = ScanSession(source, engine, settings=settings, roi=args.roi)
    print(f"ROI (screen): {session.roi.to_tuple()}")
    print("\nScanning... (Ctrl+C to stop)")

    session.start()
    try:
        for result in session.results():
            if result.is_error:
                print(f"ERROR: {result.error}")
                continue
            expiry = result.expiry_date or "--/--"
            print(f"  card ****{result.card_number[-4:]}  exp {expiry}  {result.issuing_network}")
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        session.stop()
        session.wait(timeout=5.0)

    summarize(session)

    if args.output:
        session.final_results.export(args.output)
        print(f"\nOutputs:")
        print(f"  Results: {args.output}")

    if args.save_last and session.last_analysis_image is not None:
        cv2.imwrite(args.save_last, session.last_analysis_image)
        print(f"Last analysis image: {args.save_last}")

    if session.error is not None:
        sys.exit(1)


if __name__ == "__main__":
    main()
