"""
Confidence bounds for annual indices by simulation from the coefficient posterior.

Coefficient vectors of both model parts are drawn from their approximate
posterior N(coef, Vp), pushed through the grid model matrices, and summed over
the grid to give one simulated index per draw.
Random-effect columns are zero on the grid, as for the point estimates.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from survey_index.models.smooth import SmoothGAM
from survey_index.models.two_part import FittedModelPair
from survey_index.utils import empirical_bounds, ensure_dense, inv_logit

logger = logging.getLogger(__name__)

# Bounds are simulated only when more draws than this are requested
MIN_BOOTSTRAP_SAMPLES = 10


class BootstrapEstimator:
    """Simulated index bounds for one age class.

    Parameters
    ----------
    models : FittedModelPair
        Fitted two-part model
    n_boot : int
        Number of simulated coefficient vectors per year
    random_state : int, SeedSequence or Generator, optional
        Seed for the draws
    probs : pair of float
        Quantile probabilities of the lower and upper bounds
    """

    def __init__(
        self,
        models: FittedModelPair,
        n_boot: int = 1000,
        random_state: Optional[Union[int, np.random.SeedSequence, np.random.Generator]] = None,
        probs: Sequence[float] = (0.025, 0.975),
    ):
        self.models = models
        self.n_boot = int(n_boot)
        self.probs = tuple(probs)
        self.rng = np.random.default_rng(random_state)

    @property
    def enabled(self) -> bool:
        return self.n_boot > MIN_BOOTSTRAP_SAMPLES

    def draw_coefficients(self, model: SmoothGAM) -> NDArray:
        """Coefficient draws of shape (n_boot, n_coef)."""
        return self.rng.multivariate_normal(
            model.coef_, model.cov_, size=self.n_boot, check_valid="ignore", method="eigh"
        )

    def simulate(self, frame: pd.DataFrame) -> NDArray:
        """Simulated index values, one per draw.

        Parameters
        ----------
        frame : pd.DataFrame
            Grid cells with the year's reference covariates

        Returns
        -------
        NDArray of shape (n_boot,)
        """
        positive, zero = self.models.positive, self.models.zero
        X_pos = ensure_dense(positive.design_matrix(frame, include_random=False))
        X_zero = ensure_dense(zero.design_matrix(frame, include_random=False))
        offset_pos = positive.offset(frame)[:, None]
        offset_zero = zero.offset(frame)[:, None]

        beta_pos = self.draw_coefficients(positive)
        beta_zero = self.draw_coefficients(zero)

        presence = inv_logit(X_zero @ beta_zero.T + offset_zero)
        with np.errstate(over="ignore", invalid="ignore"):
            catch = np.exp(X_pos @ beta_pos.T + self.models.log_mean_correction + offset_pos)
            return (presence * catch).sum(axis=0)

    def bounds(self, frame: pd.DataFrame) -> Tuple[float, float]:
        """Lower and upper empirical quantiles of the simulated index."""
        samples = self.simulate(frame)
        finite = np.isfinite(samples)
        if not finite.all():
            logger.warning(
                f"Age {self.models.age}: dropping {int((~finite).sum())} non-finite "
                f"bootstrap samples of {len(samples)}"
            )
            samples = samples[finite]
        if samples.size == 0:
            return 0.0, 0.0
        return empirical_bounds(samples, self.probs)
