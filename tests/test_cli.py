"""
Tests for the command-line interface.
"""

import pandas as pd
import pytest

from conftest import FORMULA_POSITIVE, FORMULA_ZERO, generate_numbers_at_age
from survey_index.cli import build_parser, main


@pytest.fixture
def inputs(tmp_path, hauls, grid):
    nage = pd.DataFrame(generate_numbers_at_age(hauls, n_ages=2), columns=['1', '2'])
    paths = {
        'hauls': tmp_path / "hauls.csv",
        'nage': tmp_path / "nage.csv",
        'grid': tmp_path / "grid.csv",
    }
    hauls.to_csv(paths['hauls'], index=False)
    nage.to_csv(paths['nage'], index=False)
    grid.cells.to_csv(paths['grid'], index=False)
    return paths


def base_args(inputs, output):
    return [
        '--hauls', str(inputs['hauls']),
        '--numbers-at-age', str(inputs['nage']),
        '--model-positive', FORMULA_POSITIVE,
        '--model-zero', FORMULA_ZERO,
        '--n-boot', '0',
        '--n-jobs', '1',
        '--output', str(output),
    ]


class TestParser:
    """Tests for argument parsing."""

    def test_defaults(self):
        args = build_parser().parse_args(
            ['--hauls', 'h.csv', '--numbers-at-age', 'n.csv', '--grid', 'g.csv', '-o', 'out']
        )
        assert args.family == 'Gamma'
        assert args.gamma == 1.4
        assert args.n_boot == 1000
        assert args.n_jobs == 2
        assert args.ages is None

    def test_grid_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['--hauls', 'h.csv', '--numbers-at-age', 'n.csv', '-o', 'out'])


class TestMain:
    """Tests for the main entry point."""

    def test_writes_tables(self, inputs, tmp_path):
        output = tmp_path / "out"
        main(base_args(inputs, output) + ['--grid', str(inputs['grid'])])

        for name in ('index', 'lower', 'upper', 'summary'):
            assert (output / f"{name}.csv").exists()

        index = pd.read_csv(output / "index.csv", index_col='year')
        assert list(index.index) == [2001, 2002, 2003, 2004, 2005]
        assert list(index.columns) == ['1', '2']
        assert (index.values > 0).all()

        summary = pd.read_csv(output / "summary.csv")
        assert set(summary.columns) == {'log_likelihood', 'edf', 'aic', 'bic', 'n_obs'}

    def test_grid_from_hauls(self, inputs, hauls, tmp_path):
        ids = tmp_path / "ids.csv"
        hauls[['haul_id']].iloc[::25].to_csv(ids, index=False)
        output = tmp_path / "out"

        main(base_args(inputs, output) + ['--grid-hauls', str(ids), '--ages', '2'])

        index = pd.read_csv(output / "index.csv", index_col='year')
        assert list(index.columns) == ['2']

    def test_configuration_error_exits(self, inputs, tmp_path):
        args = base_args(inputs, tmp_path / "out") + [
            '--grid', str(inputs['grid']), '--ages', '9',
        ]
        with pytest.raises(SystemExit) as excinfo:
            main(args)
        assert excinfo.value.code == 1
