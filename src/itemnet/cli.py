"""
Command line entry point: ``itemnet ITEMS_FILE [options]``.

Runs the pipeline top to bottom, prints the text report, and optionally
writes the CSV tables.
"""

import argparse
import logging
import sys
import warnings

import matplotlib

from .config import load_config, load_local_secrets
from .errors import ItemnetError, NonConvergenceWarning
from .export import format_report, write_csv_exports
from .pipeline import run_pipeline
from .plotting import save_figures

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="itemnet",
        description="Embed survey items, prune redundant and unstable ones, and report their structure.",
    )
    parser.add_argument("items", help="Item file (.json, .toml or .csv) holding one named list of phrases")
    parser.add_argument("--config", help="TOML file with an [itemnet] table")
    parser.add_argument("--output-dir", help="Directory for CSV exports and PNG figures")
    parser.add_argument("--report", help="Write the text report to this file instead of stdout")
    parser.add_argument("--backend", dest="embedding_backend", choices=["openai", "tfidf"])
    parser.add_argument("--network", dest="network_method", choices=["glasso", "tmfg"])
    parser.add_argument("--threshold", dest="stability_threshold", type=float)
    parser.add_argument("--n-bootstrap", type=int)
    parser.add_argument("--max-iterations", type=int)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--exclude", type=int, nargs="*", help="0-based positions of raw items to drop")
    parser.add_argument("--parallel", dest="use_parallel", action="store_true", default=None)
    parser.add_argument("--secrets", default="secrets.toml", help="Local secrets file with a [default] table")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    # Figures are only ever written to files
    matplotlib.use("Agg")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    # Surfaced through the report instead
    warnings.simplefilter("ignore", NonConvergenceWarning)

    load_local_secrets(args.secrets)

    try:
        config = load_config(
            args.config,
            exclude=args.exclude,
            embedding_backend=args.embedding_backend,
            network_method=args.network_method,
            stability_threshold=args.stability_threshold,
            n_bootstrap=args.n_bootstrap,
            max_iterations=args.max_iterations,
            seed=args.seed,
            use_parallel=args.use_parallel,
        )
        result = run_pipeline(args.items, config)
    except ItemnetError as e:
        logger.error("Run aborted at stage '%s': %s", e.stage, e)
        return 1

    report = format_report(result)
    if args.report:
        with open(args.report, "w", encoding="utf-8") as fh:
            fh.write(report)
        logger.info("Report written to %s", args.report)
    else:
        sys.stdout.write(report)

    if args.output_dir:
        write_csv_exports(result, args.output_dir)
        save_figures(result, args.output_dir)
    return 0


if __name__ == "__main__":
    sys.exit(main())
