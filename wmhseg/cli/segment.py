"""Command-line interface for multi-backend WMH segmentation.

Usage:
    wmhseg -inT1 t1.nii -inFLAIR flair.nii -outFolder out -threads 4 -doLPA -doPGS
    wmhseg -inT1 t1.nii -inFLAIR flair.nii -outFolder out -threads 8 -doALL -parallel 2
    wmhseg -config configs/wmhseg.yaml -doSYSU
"""

from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional
import argparse
import logging
import sys

from wmhseg.config import BACKEND_IDS, PipelineConfig, load_pipeline_config
from wmhseg.coordinator import RunCoordinator
from wmhseg.errors import ConfigurationError, UsageError, WMHSegError

USAGE = (
    "Usage: wmhseg -inT1 <path> -inFLAIR <path> -outFolder <path> -threads <number> "
    "[-doLPA] [-doPGS] [-doSYSU] [-doFMRIB] [-doUCD] [-doLSTAI] [-doWMHsynthseg] [-doALL] "
    "[-config <yaml>] [-timeout <seconds>] [-parallel <n>] [-qc] [-dryRun] [-verbose]"
)


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports errors as UsageError instead of exiting."""

    def error(self, message: str) -> None:
        raise UsageError(message)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the CLI.

    Args:
        verbose: If True, set logging level to DEBUG; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Argument list (defaults to sys.argv[1:]).

    Returns:
        Parsed arguments namespace.

    Raises:
        UsageError: If an argument is unknown or malformed.
    """
    parser = _ArgumentParser(
        prog="wmhseg",
        description="White matter hyperintensity segmentation with multiple backends.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        epilog="""
Backends:
  -doLPA          SPM12/LST lesion prediction algorithm (MATLAB)
  -doLSTAI        LST-AI (container)
  -doPGS          PGS (container)
  -doSYSU         sysu_media_2 (container)
  -doFMRIB        FMRIB TrUE-Net (container)
  -doUCD          UC Davis WMHkit (container)
  -doWMHsynthseg  FreeSurfer WMH-SynthSeg
  -doALL          all of the above

Preprocessing runs once per output folder; delete proc/pre to redo it.
        """,
    )

    parser.add_argument("-inT1", dest="t1", type=str, default=None, help="Input T1-weighted image.")
    parser.add_argument("-inFLAIR", dest="flair", type=str, default=None, help="Input FLAIR image.")
    parser.add_argument("-outFolder", dest="output_dir", type=str, default=None, help="Output folder.")
    parser.add_argument("-threads", dest="threads", type=int, default=None, help="Number of threads.")

    for backend_id in BACKEND_IDS:
        parser.add_argument(
            f"-do{backend_id}",
            dest="selected",
            action="append_const",
            const=backend_id,
            help=f"Run {backend_id}.",
        )
    parser.add_argument(
        "-doALL",
        dest="selected",
        action="append_const",
        const="ALL",
        help="Run every backend.",
    )

    parser.add_argument("-config", dest="config", type=Path, default=None, help="Pipeline configuration YAML.")
    parser.add_argument("-timeout", dest="timeout", type=float, default=None, help="Timeout per external tool in seconds.")
    parser.add_argument("-parallel", dest="parallel", type=int, default=None, help="Number of backends run concurrently.")
    parser.add_argument("-qc", dest="qc", action="store_true", help="Write a mask overlay PNG per backend.")
    parser.add_argument("-dryRun", dest="dry_run", action="store_true", help="Log external commands without running them.")
    parser.add_argument("-verbose", dest="verbose", action="store_true", help="Enable verbose logging (DEBUG level).")

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Merge the optional YAML configuration with command-line flags.

    Without ``-config``, input, output, thread count and a backend selection
    must all be given on the command line.

    Raises:
        UsageError: If a required argument is missing.
        ConfigurationError: If the merged configuration is invalid.
        FileNotFoundError: If the configuration file does not exist.
    """
    base = load_pipeline_config(args.config) if args.config else PipelineConfig()

    overrides: Dict[str, Any] = {}
    if args.t1 is not None:
        overrides["t1"] = args.t1
    if args.flair is not None:
        overrides["flair"] = args.flair
    if args.output_dir is not None:
        overrides["output_dir"] = args.output_dir
    if args.threads is not None:
        overrides["threads"] = args.threads
    if args.selected:
        overrides["backends"] = list(args.selected)
    if args.timeout is not None:
        overrides["tool_timeout"] = args.timeout
    if args.parallel is not None:
        overrides["max_parallel_backends"] = args.parallel
    if args.qc:
        overrides["qc_figures"] = True
    if args.dry_run:
        overrides["dry_run"] = True
    if args.verbose:
        overrides["log_level"] = "DEBUG"

    config = replace(base, **overrides)

    missing = [
        flag for flag, value in (
            ("-inT1", config.t1),
            ("-inFLAIR", config.flair),
            ("-outFolder", config.output_dir),
        )
        if not value
    ]
    # A configuration file supplies its own thread count
    if args.config is None and args.threads is None:
        missing.append("-threads")
    if missing:
        raise UsageError(f"missing required argument(s): {' '.join(missing)}")
    if not config.backends:
        raise UsageError("no segmentation backend selected")

    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 if every selected backend succeeded, non-zero otherwise).
    """
    try:
        args = parse_arguments(argv)
    except UsageError as e:
        print(USAGE, file=sys.stderr)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    setup_logging(verbose=args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = build_config(args)
    except UsageError as e:
        print(USAGE, file=sys.stderr)
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1

    logging.getLogger().setLevel(config.log_level)

    try:
        summary = RunCoordinator(config).run()
    except WMHSegError as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1

    if summary.failed:
        logger.error(f"{len(summary.failed)} backend(s) failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
