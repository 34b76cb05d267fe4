"""Utility functions for survey-index models."""

from __future__ import annotations

from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import sparse
from scipy.special import expit


def ensure_array(data: Union[NDArray, pd.DataFrame, pd.Series]) -> NDArray:
    """Convert pandas DataFrame/Series or array-like to numpy array.

    Parameters
    ----------
    data : array-like, DataFrame, or Series
        Input data

    Returns
    -------
    NDArray
        Numpy array
    """
    if isinstance(data, (pd.DataFrame, pd.Series)):
        return data.values
    return np.asarray(data)


def ensure_dense(matrix) -> NDArray:
    """Return a dense 2D array from a dense or scipy sparse matrix."""
    if sparse.issparse(matrix):
        return matrix.toarray()
    return np.asarray(matrix)


def inv_logit(x: NDArray) -> NDArray:
    """Inverse logit link, 1 / (1 + exp(-x))."""
    return expit(x)


def empirical_bounds(
    samples: NDArray,
    probs: Sequence[float] = (0.025, 0.975),
) -> Tuple[float, float]:
    """Empirical quantiles of a bootstrap sample.

    Uses linear interpolation between order statistics, which matches the
    default quantile definition of most statistical software.

    Parameters
    ----------
    samples : NDArray
        One-dimensional sample
    probs : pair of float
        Lower and upper probabilities

    Returns
    -------
    lower, upper : float
        Quantiles at ``probs``
    """
    lower, upper = np.quantile(np.asarray(samples, dtype=float), probs)
    return float(lower), float(upper)


def compute_aic(log_likelihood: float, n_params: float) -> float:
    """Compute Akaike Information Criterion.

    Parameters
    ----------
    log_likelihood : float
        Log-likelihood of the model
    n_params : float
        Number of (effective) parameters

    Returns
    -------
    float
        AIC value
    """
    return 2 * n_params - 2 * log_likelihood


def compute_bic(log_likelihood: float, n_params: float, n_obs: int) -> float:
    """Compute Bayesian Information Criterion.

    Parameters
    ----------
    log_likelihood : float
        Log-likelihood of the model
    n_params : float
        Number of (effective) parameters
    n_obs : int
        Number of observations

    Returns
    -------
    float
        BIC value
    """
    return n_params * np.log(n_obs) - 2 * log_likelihood


def bic_penalty(n_obs: int) -> float:
    """Penalty inflation factor equivalent to BIC, ``log(n) / 2``."""
    return float(np.log(n_obs) / 2)


def most_common(values: pd.Series):
    """Most frequent value of a series (first one on ties)."""
    counts = values.value_counts(sort=True)
    if counts.empty:
        raise ValueError("Cannot take the most common value of an empty series")
    return counts.index[0]
