"""
Penalised smooth regression on survey data frames.

:class:`SmoothGAM` binds a formula string to a pygam model and exposes what the
survey index needs from a fitted smooth regression: coefficients, their
covariance, effective degrees of freedom, the scale estimate, the
log-likelihood, and the model matrix for new covariate rows.

With ``lam="auto"`` the smoothing weights are chosen by pygam's grid search
(GCV, or UBRE for the binomial family) and then multiplied by the penalty
inflation factor, which plays the role of mgcv's ``gamma``.

pygam has no offset argument. Offsets are folded into the response where the
family allows it exactly (Gamma with log link, Normal with identity link) and
added back on the link scale at prediction time.

References
----------
.. [1] Wood, S. N. (2017). Generalized Additive Models: An Introduction with R.
       Chapman and Hall/CRC.
.. [2] Servén, D., & Brummitt, C. (2018). pyGAM: Generalized Additive Models
       in Python. Zenodo.
"""

from __future__ import annotations

import logging
import warnings
from typing import Dict, Literal, Mapping, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from pygam import GammaGAM, LinearGAM, LogisticGAM
from pygam.utils import flatten
from scipy import sparse

from survey_index.base import BaseEstimator, ModelSummary
from survey_index.exceptions import SurveyIndexError
from survey_index.formula import Formula, ModelFrame, parse_formula
from survey_index.utils import ensure_array, inv_logit

logger = logging.getLogger(__name__)

FAMILIES = ("normal", "gamma", "binomial")

# Candidate multipliers of the base smoothing weights
LAM_GRID = np.logspace(-3, 3, 11)


class ConvergenceError(SurveyIndexError, ArithmeticError):
    """The penalised IRLS fit did not converge to finite coefficients."""


class SmoothGAM(BaseEstimator):
    """Generalized additive model defined by a formula string.

    Parameters
    ----------
    formula : str or Formula
        Right-hand side of the model formula
    family : {'normal', 'gamma', 'binomial'}
        Response distribution. Gamma and binomial use log and logit links.
    basis_dim : int, optional
        Value substituted for ``k=K`` in the formula
    lam : float or "auto"
        Smoothing weight for penalised terms that do not set their own, or
        ``"auto"`` to select the weights by grid search
    penalty : float
        Penalty inflation factor multiplying every smoothing weight
    knots : mapping, optional
        Column name -> knot locations bounding the spline basis
    spline_order : int
        Order of B-splines (default 3 = cubic)
    max_iter : int
        Maximum iterations for fitting
    tol : float
        Convergence tolerance

    Attributes
    ----------
    gam_ : GAM
        Fitted pygam model
    frame_ : ModelFrame
        Fitted formula frame
    coef_ : NDArray
        Coefficient vector
    cov_ : NDArray
        Bayesian covariance matrix of the coefficients
    edf_ : float
        Effective degrees of freedom
    lam_ : NDArray
        Smoothing weights of the fitted model, one per penalty
    scale_ : float
        Scale estimate (residual variance for the normal family)
    loglik_ : float
        Log-likelihood of the response on its original scale
    n_samples_ : int
        Number of training rows

    Examples
    --------
    >>> model = SmoothGAM("year + s(depth, k=6)", family="gamma")
    >>> model.fit(hauls, catch)
    >>> eta = model.linear_predictor(grid_frame)
    """

    def __init__(
        self,
        formula: Union[str, Formula],
        family: Literal["normal", "gamma", "binomial"] = "normal",
        basis_dim: Optional[int] = None,
        lam: Union[float, str] = "auto",
        penalty: float = 1.0,
        knots: Optional[Mapping[str, Sequence[float]]] = None,
        spline_order: int = 3,
        max_iter: int = 100,
        tol: float = 1e-4,
    ):
        super().__init__()

        if family not in FAMILIES:
            raise ValueError(f"family must be one of {FAMILIES}, got {family!r}")
        if lam != "auto" and not (isinstance(lam, (int, float)) and lam >= 0):
            raise ValueError(f"lam must be 'auto' or a non-negative number, got {lam!r}")

        if isinstance(formula, str):
            formula = parse_formula(formula, basis_dim=basis_dim)
        self.formula = formula
        self.family = family
        self.basis_dim = basis_dim
        self.lam = lam
        self.penalty = penalty
        self.knots = knots
        self.spline_order = spline_order
        self.max_iter = max_iter
        self.tol = tol

        self.gam_ = None
        self.frame_: Optional[ModelFrame] = None
        self.coef_: Optional[NDArray] = None
        self.cov_: Optional[NDArray] = None
        self.lam_: Optional[NDArray] = None
        self.edf_: Optional[float] = None
        self.scale_: Optional[float] = None
        self.loglik_: Optional[float] = None
        self.n_samples_: Optional[int] = None

    def _build_gam(self, terms):
        kwargs = dict(max_iter=self.max_iter, tol=self.tol)
        if self.family == "gamma":
            return GammaGAM(terms, **kwargs)
        if self.family == "binomial":
            return LogisticGAM(terms, **kwargs)
        return LinearGAM(terms, **kwargs)

    def fit(
        self,
        data: pd.DataFrame,
        y: Union[NDArray, pd.Series],
    ) -> "SmoothGAM":
        """Fit the model.

        Parameters
        ----------
        data : pd.DataFrame
            Covariates, one row per observation
        y : array-like of shape (n_samples,)
            Response. 0/1 for the binomial family, strictly positive for gamma.

        Returns
        -------
        self : SmoothGAM
            Fitted model

        Raises
        ------
        ConvergenceError
            If pygam reports non-convergence or the coefficients are not finite
        """
        y = ensure_array(y).astype(float)
        if len(y) != len(data):
            raise ValueError(f"data has {len(data)} rows but y has {len(y)} values")

        if self.family == "binomial" and self.formula.offsets:
            logger.warning(
                "Offsets %s enter the binomial model as linear terms",
                [cov.label for cov in self.formula.offsets],
            )

        auto = self.lam == "auto"
        self.frame_ = ModelFrame(
            self.formula,
            lam=1.0 if auto else self.lam,
            penalty=1.0 if auto else self.penalty,
            spline_order=self.spline_order,
            knots=self.knots,
            offsets_as_terms=self.family == "binomial",
        ).fit(data)

        X = self.frame_.transform(data)
        offset = self.frame_.offset(data)
        if self.family == "gamma":
            # Gamma is a scale family: y / exp(o) has the same coefficients
            y_fit = y / np.exp(offset)
        elif self.family == "normal":
            y_fit = y - offset
        else:
            y_fit = y

        logger.debug(
            f"Fitting {self.family} GAM '{self.formula}' with {X.shape[0]} samples "
            f"and {X.shape[1]} features"
        )

        self.gam_ = self._build_gam(self.frame_.build_terms())
        if auto:
            self._select_smoothing(X, y_fit)

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            self.gam_.fit(X, y_fit)

        for warning in caught:
            if "converge" in str(warning.message).lower():
                raise ConvergenceError(str(warning.message))

        stats = self.gam_.statistics_
        self.coef_ = np.asarray(self.gam_.coef_, dtype=float)
        if not np.all(np.isfinite(self.coef_)):
            raise ConvergenceError("fit produced non-finite coefficients")

        self.lam_ = np.asarray(flatten(self.gam_.lam), dtype=float)
        self.cov_ = np.asarray(stats["cov"], dtype=float)
        self.edf_ = float(stats["edof"])
        self.scale_ = float(stats["scale"])
        loglik = float(stats["loglikelihood"])
        if self.family == "gamma":
            # Jacobian of y -> y / exp(o)
            loglik -= float(offset.sum())
        self.loglik_ = loglik
        self.n_samples_ = len(y)

        self.is_fitted_ = True
        logger.debug(f"GAM fitted. edf={self.edf_:.2f}, logLik={self.loglik_:.2f}")

        return self

    def _select_smoothing(self, X: NDArray, y: NDArray) -> None:
        """Grid search the smoothing weights, then inflate them by ``penalty``.

        Fixed-effect terms have weight zero and stay unpenalised.
        """
        with warnings.catch_warnings():
            # Candidate fits away from the optimum may not converge
            warnings.simplefilter("ignore")
            self.gam_.fit(X, y)
            base = np.asarray(flatten(self.gam_.lam), dtype=float)
            if np.any(base > 0):
                logger.debug("Performing grid search for smoothing parameters")
                self.gam_.gridsearch(X, y, lam=np.outer(LAM_GRID, base), progress=False)

        selected = np.asarray(flatten(self.gam_.lam), dtype=float)
        self.gam_.set_params(lam=selected * self.penalty)
        logger.debug(f"Selected smoothing weights {selected} (penalty x{self.penalty:.3f})")

    def _random_columns(self) -> list:
        columns = []
        for i in self.frame_.random_terms_:
            columns.extend(self.gam_.terms.get_coef_indices(i))
        return columns

    def design_matrix(self, data: pd.DataFrame, include_random: bool = True):
        """Model matrix (sparse) of ``data`` under the fitted bases.

        With ``include_random=False`` the columns of random-effect terms are
        zero, which predicts for the average level of each random effect.
        """
        self._check_fitted()
        X = self.frame_.transform(data, include_random=include_random)
        M = self.gam_._modelmat(X)
        columns = self._random_columns()
        if include_random or not columns:
            return M
        keep = np.ones(M.shape[1])
        keep[columns] = 0.0
        return sparse.csr_matrix(M @ sparse.diags(keep))

    def offset(self, data: pd.DataFrame) -> NDArray:
        """Offset on the link scale for each row of ``data``."""
        self._check_fitted()
        return self.frame_.offset(data)

    def linear_predictor(self, data: pd.DataFrame, include_random: bool = True) -> NDArray:
        """Linear predictor including offsets."""
        eta = self.design_matrix(data, include_random=include_random).dot(self.coef_)
        return np.asarray(eta, dtype=float).ravel() + self.offset(data)

    def predict(
        self,
        data: pd.DataFrame,
        type: Literal["link", "response"] = "response",
        include_random: bool = True,
    ) -> NDArray:
        """Generate predictions for new data.

        Parameters
        ----------
        data : pd.DataFrame
            Covariates for prediction
        type : {'link', 'response'}
            Scale of the predictions
        include_random : bool
            Whether random-effect terms contribute

        Returns
        -------
        NDArray
            Predicted values
        """
        eta = self.linear_predictor(data, include_random=include_random)
        if type == "link":
            return eta
        if self.family == "binomial":
            return inv_logit(eta)
        if self.family == "gamma":
            return np.exp(eta)
        return eta

    def summary(self) -> ModelSummary:
        """Get model summary statistics."""
        self._check_fitted()
        return ModelSummary(
            family=self.family,
            log_likelihood=self.loglik_,
            edf=self.edf_,
            n_obs=self.n_samples_,
            scale=self.scale_,
            n_coef=len(self.coef_),
            formula=self.formula.text,
        )

    def _get_state_dict(self) -> Dict:
        """Get model state for serialization."""
        return {
            'gam': self.gam_,
            'frame': self.frame_,
            'params': {
                'formula': self.formula,
                'family': self.family,
                'basis_dim': self.basis_dim,
                'lam': self.lam,
                'penalty': self.penalty,
                'knots': self.knots,
                'spline_order': self.spline_order,
                'max_iter': self.max_iter,
                'tol': self.tol,
            },
            'fitted': {
                'coef': self.coef_,
                'cov': self.cov_,
                'lam': self.lam_,
                'edf': self.edf_,
                'scale': self.scale_,
                'loglik': self.loglik_,
                'n_samples': self.n_samples_,
            },
        }

    def _set_state_dict(self, state: Dict) -> None:
        """Set model state from deserialization."""
        for key, value in state['params'].items():
            setattr(self, key, value)
        self.gam_ = state['gam']
        self.frame_ = state['frame']
        fitted = state['fitted']
        self.coef_ = fitted['coef']
        self.cov_ = fitted['cov']
        self.lam_ = fitted['lam']
        self.edf_ = fitted['edf']
        self.scale_ = fitted['scale']
        self.loglik_ = fitted['loglik']
        self.n_samples_ = fitted['n_samples']
