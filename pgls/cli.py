"""Command-line PGLS fit.

Reads a tree and a trait table, fits one model and prints its summary.

Example:
    pgls examples/example_tree.nwk examples/example_traits.csv \\
        --response brain_mass --predictor body_mass --correlation pagel
"""

import argparse
import logging
import sys

from .analysis.comparative_methods import ModelSpec, compare_models
from .core.config import DefaultConfig, load_config
from .core.exceptions import PGLSError
from .core.framework import PGLSFramework
from .methods.correlation import CORRELATION_MODELS, correlation_from_name

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pgls", description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter
    )
    p.add_argument("tree", help="Tree file (Newick or NEXUS)")
    p.add_argument("table", help="Delimited trait table, one row per species")
    p.add_argument("--response", required=True, help="Response column")
    p.add_argument("--predictor", action="append", default=[], help="Numeric predictor column (repeatable)")
    p.add_argument("--categorical", action="append", default=[], help="Categorical predictor column (repeatable)")
    p.add_argument("--no-intercept", action="store_true", help="Fit without an intercept")
    p.add_argument("--id-column", default=None, help="Species identifier column")
    p.add_argument("--tree-format", choices=("newick", "nexus"), default=None)
    p.add_argument("--sep", default=None, help="Field separator of the table")
    p.add_argument("--correlation", choices=CORRELATION_MODELS, default=None)
    p.add_argument("--parameter", type=float, default=None,
                   help="Fix the correlation shape parameter (lambda or alpha) instead of estimating it")
    p.add_argument("--method", choices=("REML", "ML"), type=str.upper, default=None)
    p.add_argument("--compare-null", action="store_true",
                   help="Also fit the intercept-only model on the same species by ML "
                        "and print a likelihood-ratio test")
    p.add_argument("--config", default=None, help="YAML configuration file")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.compare_null and args.method == "REML":
        parser.error("--compare-null fits both models by ML; drop --method REML")

    try:
        config = load_config(args.config) if args.config else DefaultConfig()
        if args.log_level:
            config.log_level = args.log_level
        if args.sep:
            config.separator = args.sep

        framework = PGLSFramework(config, setup_logging=True)
        framework.load_data(args.tree, args.table, tree_format=args.tree_format, id_column=args.id_column)

        spec = ModelSpec.from_names(
            args.response, numeric=args.predictor, categorical=args.categorical,
            intercept=not args.no_intercept,
        )
        correlation = correlation_from_name(args.correlation or config.correlation_model, args.parameter)
        method = args.method or config.estimation_method

        if args.compare_null and method != "ML":
            logger.info("Fitting by ML instead of %s for the likelihood-ratio test", method)
            method = "ML"
        fit = framework.fit(spec, correlation, method, label="model")
        print(fit.summary())

        if args.compare_null:
            null_spec = ModelSpec(args.response, (), intercept=True)
            null_fit = framework.fit(null_spec, correlation, "ML", label="null", rows_of=spec)
            print()
            print(compare_models(null_fit, fit))
    except (PGLSError, ValueError, FileNotFoundError, KeyError) as e:
        logger.debug("Fit failed", exc_info=True)
        print(f"pgls: error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
