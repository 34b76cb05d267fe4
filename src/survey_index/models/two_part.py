"""
Two-part (delta) model for numbers-at-age.

Catches are modelled as the product of a presence probability (binomial model
of ``response > cutoff`` over all hauls) and the expected catch given presence
(Gamma or log-normal model over the positive hauls only).

References
----------
.. [1] Berg, C. W., Nielsen, A., & Kristensen, K. (2014). Evaluation of
       alternative age-based methods for estimating relative abundance from
       survey data in relation to assessment models. Fisheries Research, 151, 91-99.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from survey_index.exceptions import ConfigurationError, FittingError, FormulaError
from survey_index.formula import Formula, knot_range, parse_formula
from survey_index.models.smooth import ConvergenceError, SmoothGAM
from survey_index.utils import bic_penalty, ensure_array

logger = logging.getLogger(__name__)

FAMILIES = ("Gamma", "LogNormal")

_FIT_FAILURES = (ConvergenceError, ValueError, ArithmeticError, np.linalg.LinAlgError)


@dataclass(frozen=True)
class ModelSpec:
    """Model configuration for one age class.

    Attributes
    ----------
    age : int or str
        Age class label
    formula_positive : str
        Formula of the positive-catch model
    formula_zero : str
        Formula of the presence/absence model
    k_positive : int
        Basis dimension substituted for ``k=K`` in ``formula_positive``
    k_zero : int
        Basis dimension substituted for ``k=K`` in ``formula_zero``
    family : {'Gamma', 'LogNormal'}
        Distribution of positive catches
    cutoff : float
        Responses at or below this value count as absences
    gamma : float
        Smoothing penalty inflation factor
    lam : float or "auto"
        Base smoothing weight of penalised terms, or ``"auto"`` to select
        the weights by grid search before applying the inflation factor
    use_bic : bool
        Replace ``gamma`` by ``log(n)/2`` separately for each part
    knots_positive, knots_zero : mapping, optional
        Column name -> ``(lower, upper)`` range of the spline basis in each
        part. pygam spaces knots evenly, so interior knot locations cannot
        be given.
    max_iter : int
        Maximum solver iterations
    tol : float
        Solver convergence tolerance
    """
    age: Union[int, str]
    formula_positive: str
    formula_zero: str
    k_positive: int = 144
    k_zero: int = 64
    family: str = "Gamma"
    cutoff: float = 1.0
    gamma: float = 1.4
    lam: Union[float, str] = "auto"
    use_bic: bool = False
    knots_positive: Optional[Mapping[str, Sequence[float]]] = None
    knots_zero: Optional[Mapping[str, Sequence[float]]] = None
    max_iter: int = 100
    tol: float = 1e-4

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ConfigurationError(
                f"family must be one of {FAMILIES}, got {self.family!r} for age {self.age}"
            )
        if self.gamma <= 0:
            raise ConfigurationError(f"gamma must be positive, got {self.gamma}")
        if self.k_positive < 1 or self.k_zero < 1:
            raise ConfigurationError(
                f"Basis dimensions must be positive for age {self.age}"
            )
        if self.lam != "auto" and not (isinstance(self.lam, (int, float)) and self.lam > 0):
            raise ConfigurationError(f"lam must be 'auto' or positive, got {self.lam!r}")
        for knots in (self.knots_positive, self.knots_zero):
            for column, values in (knots or {}).items():
                knot_range(column, values)
        # Parse eagerly so formula errors surface before any fitting
        parse_formula(self.formula_positive, basis_dim=self.k_positive)
        parse_formula(self.formula_zero, basis_dim=self.k_zero)

    @property
    def positive_formula(self) -> Formula:
        return parse_formula(self.formula_positive, basis_dim=self.k_positive)

    @property
    def zero_formula(self) -> Formula:
        return parse_formula(self.formula_zero, basis_dim=self.k_zero)


@dataclass
class FittedModelPair:
    """Fitted presence and positive-catch models of one age class.

    Attributes
    ----------
    age : int or str
        Age class label
    family : str
        Distribution of positive catches
    cutoff : float
        Presence threshold used in fitting
    zero : SmoothGAM
        Binomial presence/absence model
    positive : SmoothGAM
        Positive-catch model (log link, or normal on log scale)
    log_likelihood : float
        Total log-likelihood of the two-part model
    positive_data : pd.DataFrame
        Hauls used for the positive model, with a ``response`` column
    gamma_zero, gamma_positive : float
        Penalty inflation factors used for each part
    """
    age: Union[int, str]
    family: str
    cutoff: float
    zero: SmoothGAM
    positive: SmoothGAM
    log_likelihood: float
    positive_data: pd.DataFrame
    gamma_zero: float
    gamma_positive: float

    @property
    def edf(self) -> float:
        return self.zero.edf_ + self.positive.edf_

    @property
    def residual_variance(self) -> float:
        """Residual variance of the log-scale model (LogNormal only)."""
        if self.family == "LogNormal":
            return self.positive.scale_
        return 0.0

    @property
    def log_mean_correction(self) -> float:
        """Term added to the linear predictor to get the mean on the response scale."""
        return self.residual_variance / 2

    def presence_probability(self, data: pd.DataFrame) -> NDArray:
        return self.zero.predict(data, type="response", include_random=False)

    def positive_mean(self, data: pd.DataFrame) -> NDArray:
        eta = self.positive.linear_predictor(data, include_random=False)
        return np.exp(eta + self.log_mean_correction)

    def expected_catch(self, data: pd.DataFrame) -> NDArray:
        """Expected catch per row: presence probability times positive mean.

        Random effects are left out, so ``data`` is predicted for an average
        level of each of them.
        """
        return self.presence_probability(data) * self.positive_mean(data)


class TwoPartModelFitter:
    """Fits the two-part model for one age class.

    Parameters
    ----------
    spec : ModelSpec
        Model configuration for the age class

    Examples
    --------
    >>> spec = ModelSpec(age=1, formula_positive="year + s(depth, k=6)",
    ...                  formula_zero="year + s(depth, k=6)")
    >>> models = TwoPartModelFitter(spec).fit(survey.hauls, survey.response(0))
    >>> models.log_likelihood
    """

    def __init__(self, spec: ModelSpec):
        self.spec = spec

    def _penalties(self, n_obs: int, n_positive: int):
        gamma_zero = gamma_positive = self.spec.gamma
        if self.spec.use_bic:
            gamma_zero = bic_penalty(n_obs)
            gamma_positive = bic_penalty(n_positive)
            logger.info(
                f"Age {self.spec.age}: gammaPos={gamma_positive:.4f} gammaZ={gamma_zero:.4f}"
            )
        return gamma_zero, gamma_positive

    def _fit_part(self, model: SmoothGAM, data: pd.DataFrame, y: NDArray, part: str) -> SmoothGAM:
        start = time.perf_counter()
        try:
            model.fit(data, y)
        except FormulaError:
            raise
        except _FIT_FAILURES as e:
            logger.error(f"Fit failed for age {self.spec.age} ({part} part): {e}")
            raise FittingError(self.spec.age, part, str(e)) from e
        logger.info(
            f"Age {self.spec.age}: {part} part fitted in {time.perf_counter() - start:.2f}s "
            f"(edf={model.edf_:.2f})"
        )
        return model

    def fit(
        self,
        data: pd.DataFrame,
        response: Union[NDArray, pd.Series],
    ) -> FittedModelPair:
        """Fit both parts of the model.

        Parameters
        ----------
        data : pd.DataFrame
            Haul covariates, one row per haul
        response : array-like of shape (n_hauls,)
            Numbers-at-age of this age class per haul

        Returns
        -------
        FittedModelPair
            Fitted models and total log-likelihood

        Raises
        ------
        FittingError
            If either part fails to fit
        """
        spec = self.spec
        response = ensure_array(response).astype(float)
        data = data.reset_index(drop=True)
        presence = response > spec.cutoff
        n_positive = int(presence.sum())

        if n_positive == 0:
            raise FittingError(spec.age, "positive", f"no observations above cutoff {spec.cutoff}")

        gamma_zero, gamma_positive = self._penalties(len(response), n_positive)

        positive_data = data.loc[presence].reset_index(drop=True)
        y_positive = response[presence]
        if spec.family == "LogNormal":
            positive = SmoothGAM(
                spec.positive_formula, family="normal", lam=spec.lam,
                penalty=gamma_positive, knots=spec.knots_positive,
                max_iter=spec.max_iter, tol=spec.tol,
            )
            self._fit_part(positive, positive_data, np.log(y_positive), "positive")
        else:
            positive = SmoothGAM(
                spec.positive_formula, family="gamma", lam=spec.lam,
                penalty=gamma_positive, knots=spec.knots_positive,
                max_iter=spec.max_iter, tol=spec.tol,
            )
            self._fit_part(positive, positive_data, y_positive, "positive")

        zero = SmoothGAM(
            spec.zero_formula, family="binomial", lam=spec.lam,
            penalty=gamma_zero, knots=spec.knots_zero,
            max_iter=spec.max_iter, tol=spec.tol,
        )
        self._fit_part(zero, data, presence.astype(float), "binomial")

        p = zero.predict(data, type="response")
        log_likelihood = (
            np.sum(np.log(1 - p[~presence]))
            + np.sum(np.log(p[presence]))
            + positive.loglik_
        )
        if spec.family == "LogNormal":
            # Jacobian of the log transform of the response
            log_likelihood -= np.sum(np.log(y_positive))

        return FittedModelPair(
            age=spec.age,
            family=spec.family,
            cutoff=spec.cutoff,
            zero=zero,
            positive=positive,
            log_likelihood=float(log_likelihood),
            positive_data=positive_data.assign(response=y_positive),
            gamma_zero=gamma_zero,
            gamma_positive=gamma_positive,
        )
