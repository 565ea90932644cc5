#!/usr/bin/env python3
"""
MMREG - Multi-Metric Registration Pipeline

Entry point for registering a moving image to a fixed image with a
weighted combination of similarity metrics.

Usage:
    mmreg register --fixed fixed.nii.gz --moving moving.nii.gz --output ./output
    mmreg register --fixed f_t1.nii.gz f_t2.nii.gz --moving m_t1.nii.gz m_t2.nii.gz \\
        --preset multimetric
"""

import sys
import argparse
from pathlib import Path
from typing import List, Optional

from .config import load_config, RegistrationConfig
from .data import load_image, load_mask, save_image, save_parameters
from .registration import build_registration, warp_image, RegistrationResult
from .visualization import plot_multi_level_convergence, plot_submetric_convergence
from .utils.logging_config import setup_logging, get_logger, Timer
from .utils.progress_tracker import ProgressTracker

logger = get_logger("main")

# Formats that store float32 voxels
FLOAT_IMAGE_FORMATS = (".nii", ".nii.gz", ".mha", ".mhd", ".nrrd")


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="mmreg register",
        description="MMREG - Multi-Metric Image Registration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Single metric registration with the default config
  mmreg register --fixed fixed.nii.gz --moving moving.nii.gz

  # Two metrics on two channels, relative weighting
  mmreg register --fixed f_t1.nii.gz f_t2.nii.gz --moving m_t1.nii.gz m_t2.nii.gz \\
      --preset multimetric -o ./output
        """,
    )

    # Input/Output
    parser.add_argument(
        "--fixed", "-f",
        type=str,
        nargs="+",
        required=True,
        help="Fixed image(s): one shared by all metrics, or one per metric",
    )
    parser.add_argument(
        "--moving", "-m",
        type=str,
        nargs="+",
        required=True,
        help="Moving image(s): one shared by all metrics, or one per metric",
    )
    parser.add_argument(
        "--fixed-mask",
        type=str,
        nargs="+",
        default=[],
        help="Optional fixed mask(s)",
    )
    parser.add_argument(
        "--moving-mask",
        type=str,
        nargs="+",
        default=[],
        help="Optional moving mask(s)",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Output directory (default: output.output_dir of the config, else ./mmreg_output)",
    )

    # Configuration
    parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to configuration YAML file",
    )
    parser.add_argument(
        "--preset", "-p",
        type=str,
        help="Configuration preset (see 'mmreg presets')",
    )

    # Verbosity
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: logging.level of the config)",
    )

    return parser.parse_args(argv)


def write_outputs(
    result: RegistrationResult,
    config: RegistrationConfig,
    output_path: Path,
    fixed_path: str,
    moving_path: str,
):
    """Write parameters, the warped moving image and convergence plots."""
    save_parameters(result, output_path / "parameters.json")

    if config.output.save_result_image:
        fixed = load_image(fixed_path)
        moving = load_image(moving_path)
        interpolator = config.metrics[0].interpolator
        warped = warp_image(moving, result.transform, result.final_parameters, fixed, interpolator)
        name = Path(fixed_path).name.lower()
        suffix = next((ext for ext in FLOAT_IMAGE_FORMATS if name.endswith(ext)), ".nii.gz")
        save_image(warped, output_path / f"result{suffix}", description="warped moving image")

    if config.output.save_convergence_plots:
        plot_multi_level_convergence(
            result.value_history,
            output_path=output_path / "convergence.png",
            title="Combined Metric Convergence",
        )
        plot_submetric_convergence(
            result.levels,
            output_path=output_path / "submetrics.png",
        )


def run_pipeline(args) -> int:
    """Run the registration pipeline"""
    overrides = {}
    if args.output:
        overrides["output"] = {"output_dir": args.output}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}

    setup_logging(args.log_level or "INFO")
    config = load_config(args.config, preset=args.preset, overrides=overrides)

    output_path = Path(config.output.output_dir or "./mmreg_output")
    output_path.mkdir(parents=True, exist_ok=True)
    setup_logging(config.logging.level, config.logging.log_file)

    logger.info("Loading images...")
    with Timer("Image loading", logger):
        fixed_images = [load_image(p) for p in args.fixed]
        moving_images = [load_image(p) for p in args.moving]
        fixed_masks = [load_mask(p) for p in args.fixed_mask]
        moving_masks = [load_mask(p) for p in args.moving_mask]

    for path, image in zip(args.fixed, fixed_images):
        logger.info(f"Fixed: {Path(path).name} {image.shape}, spacing: {image.spacing}")
    for path, image in zip(args.moving, moving_images):
        logger.info(f"Moving: {Path(path).name} {image.shape}, spacing: {image.spacing}")

    tracker = ProgressTracker(
        output_dir=output_path if config.output.write_progress else None,
        log_interval=config.output.log_interval,
    )
    registration = build_registration(
        config,
        fixed_images=fixed_images,
        moving_images=moving_images,
        fixed_masks=fixed_masks,
        moving_masks=moving_masks,
        progress_tracker=tracker,
    )

    with Timer("Registration", logger):
        result = registration.run()

    with Timer("Writing outputs", logger):
        write_outputs(result, config, output_path, args.fixed[0], args.moving[0])

    logger.info(f"Output directory: {output_path}")
    return 1 if any(level.failed for level in result.levels) else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)

    try:
        return run_pipeline(args)
    except Exception as e:
        logger.error(f"Registration failed: {e}")
        if args.log_level == "DEBUG":
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
