"""
Test configuration and fixtures for survey-index.
"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from survey_index.data import PredictionGrid, SurveyData

FORMULA_POSITIVE = "year + s(depth, k=6) + offset(log(haul_dur))"
FORMULA_ZERO = "year + s(depth, k=6)"


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def generate_hauls(n_years=5, hauls_per_year=50, first_year=2001, random_state=42):
    """Synthetic haul covariates."""
    rng = np.random.default_rng(random_state)
    n = n_years * hauls_per_year
    return pd.DataFrame({
        'haul_id': [f"H{i:04d}" for i in range(n)],
        'year': np.repeat(np.arange(first_year, first_year + n_years), hauls_per_year),
        'lon': rng.uniform(0, 10, n),
        'lat': rng.uniform(54, 58, n),
        'depth': rng.uniform(20, 200, n),
        'gear': rng.choice(['GOV', 'GOV', 'GOV', 'ABC'], n),
        'ship': rng.choice(['S1', 'S2', 'S3'], n),
        'time_of_year': rng.uniform(0.1, 0.3, n),
        'time_shot_hour': rng.uniform(0, 24, n),
        'haul_dur': rng.uniform(20, 40, n),
    })


def generate_numbers_at_age(hauls, n_ages=3, random_state=42, lognormal=False):
    """Zero-inflated catches per age with a depth effect and a year trend."""
    rng = np.random.default_rng(random_state + 1)
    n = len(hauls)
    depth = hauls['depth'].values
    trend = 0.1 * (hauls['year'].values - hauls['year'].min())
    nage = np.zeros((n, n_ages))
    for a in range(n_ages):
        presence = rng.random(n) < expit(0.8 - 0.012 * (depth - 110) - 0.2 * a)
        mean = np.exp(2.5 - 0.004 * depth + trend - 0.3 * a) * hauls['haul_dur'].values / 30
        if lognormal:
            catch = mean * np.exp(rng.normal(0, 0.5, n))
        else:
            catch = rng.gamma(shape=2.0, scale=mean / 2.0)
        nage[:, a] = presence * catch
    return nage


@pytest.fixture
def random_seed():
    """Set random seed for reproducibility."""
    np.random.seed(42)
    return 42


@pytest.fixture
def hauls():
    return generate_hauls()


@pytest.fixture
def survey(hauls):
    """Three age classes, five years."""
    return SurveyData(hauls, generate_numbers_at_age(hauls), ages=[1, 2, 3])


@pytest.fixture
def lognormal_survey(hauls):
    return SurveyData(hauls, generate_numbers_at_age(hauls, lognormal=True), ages=[1, 2, 3])


@pytest.fixture
def grid():
    """Twenty grid cells inside the surveyed depth range."""
    rng = np.random.default_rng(7)
    return PredictionGrid(pd.DataFrame({
        'lon': rng.uniform(0, 10, 20),
        'lat': rng.uniform(54, 58, 20),
        'depth': rng.uniform(30, 190, 20),
    }))
