"""
CLI entry point for the degkin package.

Allows running as:
    python -m degkin DATA.csv --compartment parent=SFO:m1 --compartment m1=SFO
    degkin DATA.csv (CLI command, fits SFO to a variable named parent)

The data file is a CSV table in long format with the columns name, time and
value. Compartments are given as NAME=TYPE[:TARGET,...[:nosink]].
"""

# Handle direct execution by setting up package imports
if __name__ == "__main__" and __package__ is None:
    import sys
    from pathlib import Path
    src_dir = Path(__file__).resolve().parent.parent
    sys.path.insert(0, str(src_dir))
    __package__ = "degkin"

import argparse
import sys

import pandas as pd

from .compiler import compile_model
from .fitting import fit
from .models import CompartmentSpec, ConfigurationError, compartment


def parse_compartment(text: str):
    """Parse NAME=TYPE[:TARGET,...[:nosink]] into a (name, CompartmentSpec) pair"""
    name, sep, rest = text.partition("=")
    if not sep or not name or not rest:
        raise argparse.ArgumentTypeError(
            f"Invalid compartment {text!r}, expected NAME=TYPE[:TARGET,...[:nosink]]")
    parts = rest.split(":")
    if len(parts) > 3 or (len(parts) == 3 and parts[2] != "nosink"):
        raise argparse.ArgumentTypeError(f"Invalid compartment {text!r}")
    targets = [t for t in parts[1].split(",") if t] if len(parts) > 1 else []
    try:
        spec = compartment(parts[0], targets, sink=len(parts) < 3)
    except ConfigurationError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from None
    return name, spec


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="degkin",
        description="Fit degradation kinetics models to concentration time series")
    parser.add_argument("data", help="CSV file with columns name, time and value")
    parser.add_argument("--compartment", "-c", action="append", type=parse_compartment,
                        default=[], metavar="NAME=TYPE[:TARGETS[:nosink]]",
                        help="Compartment specification, the first one is the source "
                             "(default: parent=SFO)")
    parser.add_argument("--use-of-ff", choices=["min", "max"], default="min")
    parser.add_argument("--error-model", choices=["const", "obs", "tc"], default="const")
    parser.add_argument("--algorithm", choices=["auto", "OLS", "direct", "IRLS"], default="auto")
    parser.add_argument("--solution-type", choices=["auto", "analytical", "eigen", "numerical"],
                        default="auto")
    parser.add_argument("--level", type=float, default=0.95,
                        help="Confidence level of the intervals")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print progress messages")
    return parser


def main(argv=None) -> int:
    """
    Fit a model to a data file and print the results.
    """
    args = build_parser().parse_args(argv)
    observed = pd.read_csv(args.data)
    compartments = args.compartment or [("parent", CompartmentSpec("SFO"))]

    try:
        model = compile_model(compartments, use_of_ff=args.use_of_ff, quiet=not args.verbose)
    except ConfigurationError as exc:
        print(f"Invalid model: {exc}", file=sys.stderr)
        return 2

    with model:
        result = fit(model, observed,
                     solution_type=args.solution_type,
                     error_model=args.error_model,
                     error_model_algorithm=args.algorithm,
                     quiet=not args.verbose)

        print("=" * 70)
        print("DEGRADATION KINETICS FIT")
        print("=" * 70)
        print(result)

        if args.level != 0.95:
            print(f"\nConfidence intervals at level {args.level}:")
            print(result.confint(args.level).to_string())

    return 0


if __name__ == "__main__":
    sys.exit(main())
