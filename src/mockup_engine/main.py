"""
Command-line entry point for the mockup engine.

Imports a PSD mockup, places one or more designs into its smart objects and
writes the finished image.

Usage:
    mockup-engine scene.psd --design art.png --output out.png
    mockup-engine scene.psd -d "Screen=app.png" -d "Poster=poster.jpg" -o out.jpg
    mockup-engine scene.psd --list-areas
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .compositor import MockupRenderer, RenderOptions
from .export import ExportError, normalize_format, save_surface
from .layers import DesignInput, FitMode
from .psd_import import ParseOptions, is_layered_scene_file, parse_layered_scene_file
from .utils import get_config, setup_logging, validate_config

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="mockup-engine",
        description="Place flat designs into the smart objects of a PSD mockup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mockup-engine box.psd -d art.png -o box.png               # Single smart object
  mockup-engine desk.psd -d Screen=ui.png -d Mug=logo.png -o desk.jpg
  mockup-engine desk.psd --list-areas                       # Show insertion areas

A design is given as [TARGET=]IMAGE. TARGET is matched against the smart
object id, then by name; a lone design without TARGET fills every area.
        """,
    )

    parser.add_argument("scene", help="Layered scene (PSD) file")
    parser.add_argument(
        "--design", "-d",
        action="append",
        default=[],
        metavar="[TARGET=]IMAGE",
        help="Design image for an insertion area (repeatable)",
    )
    parser.add_argument("--output", "-o", help="Output image path")
    parser.add_argument(
        "--fit",
        choices=[mode.value for mode in FitMode],
        default=FitMode.STRETCH.value,
        help="How designs are fitted to their area (default: stretch)",
    )
    parser.add_argument(
        "--backend",
        choices=["homography", "subdivision"],
        help="Perspective backend (overrides config)",
    )
    parser.add_argument("--scale", type=float, default=1.0, help="Output scale factor")
    parser.add_argument("--format", help="Output format: png, jpeg or webp (default: from extension)")
    parser.add_argument("--quality", type=float, help="JPEG/WEBP quality in [0, 1]")
    parser.add_argument("--config", "-c", help="JSON configuration file")
    parser.add_argument("--list-areas", action="store_true", help="List insertion areas and exit")
    parser.add_argument(
        "--verbose", "-V",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    return parser.parse_args(argv)


def parse_design(value: str, fit: FitMode) -> DesignInput:
    """Split ``[TARGET=]IMAGE`` into a :class:`DesignInput`."""
    target, sep, image = value.partition("=")
    if not sep:
        target, image = "", value
    return DesignInput(target_id=target.strip(), image=Path(image), fit=fit)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    config = get_config(args.config)
    if args.backend:
        config["renderer"]["backend"] = args.backend
    if args.quality is not None:
        config["export"]["quality"] = args.quality
    if not validate_config(config):
        return 2

    scene = Path(args.scene)
    if not scene.is_file() or not is_layered_scene_file(scene):
        LOGGER.error("%s is not a layered scene file", scene)
        return 2

    parsed = parse_layered_scene_file(scene, ParseOptions(), config["importer"])
    if not parsed.success:
        for error in parsed.errors:
            LOGGER.error("%s", error)
        return 1

    template = parsed.template
    if args.list_areas:
        for area in template.insert_areas:
            quad = "perspective" if area.perspective_quad else "axis-aligned"
            print(f"{area.id}\t{area.name}\t{int(area.placed_size.width)}x{int(area.placed_size.height)}\t{quad}")
        return 0

    if not args.output:
        LOGGER.error("--output is required when rendering")
        return 2
    if not args.design:
        LOGGER.error("At least one --design is required")
        return 2

    try:
        fmt = normalize_format(args.format or Path(args.output).suffix or config["export"]["format"])
    except ExportError as e:
        LOGGER.error("%s", e)
        return 2

    fit = FitMode(args.fit)
    designs = [parse_design(value, fit) for value in args.design]

    renderer = MockupRenderer(config["renderer"])
    try:
        renderer.preload([design.image for design in designs])
        options = RenderOptions(
            scale=args.scale,
            format=fmt,
            quality=float(config["export"]["quality"]),
            return_surface_handle=True,
        )
        result = renderer.render(template, designs, parsed.raster_snapshots, options)
        if not result.success:
            LOGGER.error("Render failed: %s", result.error)
            return 1

        save_surface(result.surface, args.output, options.quality, fmt)
        LOGGER.info(
            "Wrote %s (%dx%d, %s strategy, %.0f ms, %d warning(s))",
            args.output, result.width, result.height, result.strategy,
            result.render_time_ms, len(result.warnings),
        )
    except ExportError as e:
        LOGGER.error("%s", e)
        return 1
    finally:
        renderer.cleanup()

    return 0


if __name__ == "__main__":
    sys.exit(main())
