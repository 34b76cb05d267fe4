"""Annual index point estimates from a fitted two-part model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from survey_index.data import PredictionGrid, ReferenceCovariates
from survey_index.exceptions import PredictionError
from survey_index.models.two_part import FittedModelPair
from survey_index.utils import ensure_array

logger = logging.getLogger(__name__)

# Anything in here raised while evaluating a model on the grid degrades the year
PREDICTION_FAILURES = (
    PredictionError,
    ValueError,
    ArithmeticError,
    np.linalg.LinAlgError,
)


@dataclass
class YearPrediction:
    """Index estimate for one year.

    Attributes
    ----------
    year : int
        Calendar year
    index : float
        Sum of expected catch over the grid cells
    cells : NDArray, optional
        Expected catch per grid cell; None for degenerate years
    degenerate : bool
        Whether the zero fallback was used
    reason : str, optional
        Why the year is degenerate
    """
    year: int
    index: float
    cells: Optional[NDArray] = None
    degenerate: bool = False
    reason: Optional[str] = None

    @classmethod
    def zero(cls, year: int, reason: str) -> "YearPrediction":
        return cls(year=year, index=0.0, cells=None, degenerate=True, reason=reason)


class GridPredictor:
    """Predicts the expected catch of one age class over the grid, per year.

    Parameters
    ----------
    models : FittedModelPair
        Fitted two-part model
    grid : PredictionGrid
        Cells to sum over
    reference : ReferenceCovariates
        Values substituted for nuisance covariates
    years : array-like of shape (n_hauls,)
        Survey year of each haul
    response : array-like of shape (n_hauls,)
        Observed numbers-at-age of each haul
    """

    def __init__(
        self,
        models: FittedModelPair,
        grid: PredictionGrid,
        reference: ReferenceCovariates,
        years,
        response,
    ):
        self.models = models
        self.grid = grid
        self.reference = reference
        years = ensure_array(years).astype(int)
        response = ensure_array(response).astype(float)
        self.catch_years_ = set(np.unique(years[response > models.cutoff]).tolist())

    def prediction_frame(self, year: int) -> pd.DataFrame:
        return self.reference.frame_for_year(self.grid, year)

    def is_degenerate(self, year: int) -> bool:
        """True if no haul in ``year`` caught more than the cutoff."""
        return int(year) not in self.catch_years_

    def predict_year(self, year: int) -> YearPrediction:
        """Index for one year, falling back to zero when it cannot be estimated."""
        year = int(year)
        if self.is_degenerate(year):
            return YearPrediction.zero(year, "no observations above cutoff")

        frame = self.prediction_frame(year)
        try:
            eta = self.models.positive.linear_predictor(frame, include_random=False)
            presence = self.models.presence_probability(frame)
        except PREDICTION_FAILURES as e:
            logger.warning(f"Age {self.models.age}, year {year}: prediction failed ({e})")
            return YearPrediction.zero(year, f"prediction failed: {e}")

        with np.errstate(over="ignore", invalid="ignore"):
            cells = presence * np.exp(eta + self.models.log_mean_correction)
        if not (np.all(np.isfinite(eta)) and np.all(np.isfinite(presence))
                and np.all(np.isfinite(cells))):
            logger.warning(f"Age {self.models.age}, year {year}: non-finite predictions")
            return YearPrediction.zero(year, "non-finite predictions")

        return YearPrediction(year=year, index=float(cells.sum()), cells=cells)

    def predict(self, years: Iterable[int]) -> List[YearPrediction]:
        return [self.predict_year(year) for year in years]
