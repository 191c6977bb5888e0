"""
Command-line entry point for Lustre Shop.

This module is invoked when the package is run directly via:
    python -m lustre_shop CAPTURE_DIR [--output DIR] [--settings JSON]
                          [--preset NAME] [--reconstruct-all]

It parses the arguments, configures logging and hands off to app.run(),
which drives the fit on a background worker under a Qt event loop.
sys.exit returns the run's exit code to the OS.
"""

import argparse
import logging
import sys
from pathlib import Path

from lustre_shop import __version__
from lustre_shop.app import FitRequest, run
from lustre_shop.core.pipeline import BASIS_PRESETS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lustre_shop",
        description="Fit a specular basis BRDF to a calibrated multi-view capture.",
    )
    parser.add_argument("capture_dir", type=Path, help="directory containing capture.json")
    parser.add_argument("-o", "--output", type=Path, default=None,
                        help="workspace directory (default: a timestamped one under ~/LustreShop/fits)")
    parser.add_argument("-s", "--settings", type=Path, default=None,
                        help="JSON settings file")
    parser.add_argument("-p", "--preset", choices=list(BASIS_PRESETS), default=None,
                        help="basis preset; overrides the basis section of the settings file")
    parser.add_argument("--reconstruct-all", action="store_true",
                        help="reconstruct and write every view, not only the primary one")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    request = FitRequest(
        capture_dir=args.capture_dir,
        output_dir=args.output,
        settings_path=args.settings,
        preset=args.preset,
        reconstruct_all=args.reconstruct_all,
    )
    try:
        return run(request, [sys.argv[0]])
    except (ValueError, OSError) as e:
        logging.getLogger("lustre_shop").error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
