"""
Command-Line Interface for survey-index.

    survey-index --hauls hauls.csv --numbers-at-age nage.csv --grid grid.csv -o out/

Writes ``index.csv``, ``lower.csv``, ``upper.csv`` (years x ages) and
``summary.csv`` (log-likelihood, effective degrees of freedom, AIC, BIC).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def _smoothing_weight(value: str):
    if value == 'auto':
        return value
    try:
        return float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected 'auto' or a number, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='survey-index',
        description='Calculate age-based survey indices from trawl survey hauls',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Data arguments
    parser.add_argument(
        '--hauls',
        type=str,
        required=True,
        help='CSV file with one row per haul (year, lon, lat, depth, ...)',
    )
    parser.add_argument(
        '--numbers-at-age',
        type=str,
        required=True,
        help='CSV file with one column per age, rows aligned with --hauls',
    )
    grid = parser.add_mutually_exclusive_group(required=True)
    grid.add_argument(
        '--grid',
        type=str,
        help='CSV file with prediction grid cells (lon, lat, depth)',
    )
    grid.add_argument(
        '--grid-hauls',
        type=str,
        help='CSV file with a haul_id column selecting hauls as grid cells',
    )
    parser.add_argument(
        '--ages',
        nargs='+',
        default=None,
        help='Ages to model (column names of --numbers-at-age); all by default',
    )

    # Model arguments
    parser.add_argument(
        '--model-positive',
        type=str,
        default=None,
        help='Formula of the positive part, used for every age',
    )
    parser.add_argument(
        '--model-zero',
        type=str,
        default=None,
        help='Formula of the presence/absence part, used for every age',
    )
    parser.add_argument(
        '--k-positive',
        type=int,
        nargs='+',
        default=None,
        help='Basis dimension for k=K in the positive part (one value or one per age)',
    )
    parser.add_argument(
        '--k-zero',
        type=int,
        nargs='+',
        default=None,
        help='Basis dimension for k=K in the presence part (one value or one per age)',
    )
    parser.add_argument(
        '--family',
        type=str,
        choices=['Gamma', 'LogNormal'],
        default='Gamma',
        help='Distribution of positive catches',
    )
    parser.add_argument(
        '--gamma',
        type=float,
        default=1.4,
        help='Smoothing penalty inflation factor',
    )
    parser.add_argument(
        '--lam',
        type=_smoothing_weight,
        default='auto',
        help='Base smoothing weight, or "auto" to select it by grid search',
    )
    parser.add_argument(
        '--cutoff',
        type=float,
        default=1.0,
        help='Treat observations at or below this value as zero',
    )
    parser.add_argument(
        '--use-bic',
        action='store_true',
        help='Use log(n)/2 as penalty inflation factor (overrides --gamma)',
    )
    parser.add_argument(
        '--haul-duration',
        type=float,
        default=30.0,
        help='Standard haul duration on the grid',
    )
    parser.add_argument(
        '--standard-gear',
        type=str,
        default='GOV',
        help='Standard gear on the grid',
    )

    # Bootstrap and execution
    parser.add_argument(
        '--n-boot',
        type=int,
        default=1000,
        help='Bootstrap samples for confidence bounds (disabled if <= 10)',
    )
    parser.add_argument(
        '--n-jobs',
        type=int,
        default=2,
        help='Number of parallel workers',
    )
    parser.add_argument(
        '--random-state',
        type=int,
        default=None,
        help='Random seed for reproducibility',
    )

    # Output arguments
    parser.add_argument(
        '--output', '-o',
        type=str,
        required=True,
        help='Output directory for index tables',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output',
    )
    return parser


def _per_age(values: Optional[List], n_ages: int) -> Optional[List]:
    if values is not None and len(values) == 1:
        return values * n_ages
    return values


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    # Import here to avoid slow imports for --help
    from survey_index import (
        PredictionGrid,
        SurveyData,
        SurveyIndexError,
        get_survey_index,
    )

    logger.info(f"Loading hauls from {args.hauls}")
    hauls = pd.read_csv(args.hauls)
    logger.info(f"Loading numbers-at-age from {args.numbers_at_age}")
    nage = pd.read_csv(args.numbers_at_age)

    try:
        survey = SurveyData(hauls, nage)
        if args.grid:
            grid = PredictionGrid(pd.read_csv(args.grid))
        else:
            ids = pd.read_csv(args.grid_hauls)['haul_id']
            grid = PredictionGrid.from_hauls(survey, ids)

        ages = args.ages if args.ages is not None else survey.ages
        n_ages = len(ages)
        logger.info(
            f"Data loaded: {survey.n_hauls} hauls, {n_ages} ages, {len(grid)} grid cells"
        )

        result = get_survey_index(
            survey,
            grid,
            ages=ages,
            model_positive=[args.model_positive] * n_ages if args.model_positive else None,
            model_zero=[args.model_zero] * n_ages if args.model_zero else None,
            k_positive=_per_age(args.k_positive, n_ages),
            k_zero=_per_age(args.k_zero, n_ages),
            family=args.family,
            gamma=args.gamma,
            lam=args.lam,
            cutoff=args.cutoff,
            use_bic=args.use_bic,
            n_boot=args.n_boot,
            n_jobs=args.n_jobs,
            random_state=args.random_state,
            haul_duration=args.haul_duration,
            standard_gear=args.standard_gear,
        )
    except SurveyIndexError as e:
        logger.error(str(e))
        sys.exit(1)

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    for which in ('index', 'lower', 'upper'):
        result.to_frame(which).to_csv(output_dir / f"{which}.csv")
    pd.DataFrame([result.summary()]).to_csv(output_dir / "summary.csv", index=False)
    logger.info(f"Survey index saved to {output_dir}")


if __name__ == '__main__':
    main()
