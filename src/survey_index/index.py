"""
Survey indices by age.

Runs the two-part model, grid prediction and bootstrap for every age class in
parallel and assembles the year x age index matrices.

The model follows Berg et al. (2014), Fisheries Research 151, 91-99.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray
import pandas as pd
from joblib import Parallel, delayed

from survey_index.bootstrap import BootstrapEstimator
from survey_index.data import PredictionGrid, ReferenceCovariates, SurveyData
from survey_index.exceptions import ConfigurationError, FittingError
from survey_index.models.two_part import FAMILIES, FittedModelPair, ModelSpec, TwoPartModelFitter
from survey_index.prediction import GridPredictor
from survey_index.utils import compute_aic, compute_bic

logger = logging.getLogger(__name__)

DEFAULT_MODEL_POSITIVE = (
    "year + s(lon, lat, k=K, bs='ts') + s(ship, bs='re') + s(depth, bs='ts') "
    "+ s(time_shot_hour, bs='cc')"
)
DEFAULT_MODEL_ZERO = DEFAULT_MODEL_POSITIVE
DEFAULT_K_POSITIVE = 12 * 12
DEFAULT_K_ZERO = 8 * 8


@dataclass
class SurveyIndexConfig:
    """Configuration of a survey index run.

    Per-age settings are vectors with one entry per age class.

    Attributes
    ----------
    ages : sequence
        Age classes to model, as labelled in the survey data
    model_positive : sequence of str, optional
        Positive-part formula per age
    model_zero : sequence of str, optional
        Presence/absence formula per age
    k_positive : sequence of int, optional
        Basis dimension substituted for ``k=K`` in the positive formulas
    k_zero : sequence of int, optional
        Basis dimension substituted for ``k=K`` in the presence formulas
    family : str or sequence of str
        ``'Gamma'`` or ``'LogNormal'``, shared or per age
    gamma : float
        Smoothing penalty inflation factor
    lam : float or "auto"
        Base smoothing weight of penalised terms, or ``"auto"`` for grid search
    cutoff : float
        Responses at or below this value count as absences
    use_bic : bool
        Derive the penalty inflation factor from ``log(n)/2``
    n_boot : int
        Bootstrap draws per year; bounds are computed only above 10
    n_jobs : int
        Number of parallel workers
    backend : str
        joblib backend
    random_state : int, optional
        Seed for the bootstrap draws
    knots_positive, knots_zero : mapping, optional
        Column name -> knot locations for each part
    haul_duration : float
        Standard haul duration used on the grid
    standard_gear : str
        Gear used on the grid when present in the data
    max_iter : int
        Maximum solver iterations
    tol : float
        Solver convergence tolerance
    """
    ages: Sequence
    model_positive: Optional[Sequence[str]] = None
    model_zero: Optional[Sequence[str]] = None
    k_positive: Optional[Sequence[int]] = None
    k_zero: Optional[Sequence[int]] = None
    family: Union[str, Sequence[str]] = "Gamma"
    gamma: float = 1.4
    lam: Union[float, str] = "auto"
    cutoff: float = 1.0
    use_bic: bool = False
    n_boot: int = 1000
    n_jobs: int = 2
    backend: str = "loky"
    random_state: Optional[int] = None
    knots_positive: Optional[Mapping[str, Sequence[float]]] = None
    knots_zero: Optional[Mapping[str, Sequence[float]]] = None
    haul_duration: float = 30.0
    standard_gear: str = "GOV"
    max_iter: int = 100
    tol: float = 1e-4

    def _vector(self, name: str, value, default) -> list:
        n_ages = len(self.ages)
        if value is None:
            return [default] * n_ages
        if isinstance(value, (str, int, float)):
            raise ConfigurationError(f"{name} must be a sequence with one entry per age")
        value = list(value)
        if len(value) < n_ages:
            raise ConfigurationError(f"length({name}) < length(ages): {len(value)} < {n_ages}")
        if len(value) > n_ages:
            logger.warning(f"{name} has {len(value)} entries for {n_ages} ages; extra ignored")
        return value[:n_ages]

    def model_specs(self) -> List[ModelSpec]:
        """Validate the configuration and build one ModelSpec per age.

        Raises
        ------
        ConfigurationError
            If a per-age vector is too short, a formula does not parse,
            or a scalar setting is out of range
        """
        if len(self.ages) == 0:
            raise ConfigurationError("At least one age class is required")
        if len(set(self.ages)) != len(self.ages):
            raise ConfigurationError(f"Duplicate age classes in {list(self.ages)}")
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be at least 1, got {self.n_jobs}")
        if self.n_boot < 0:
            raise ConfigurationError(f"n_boot must be non-negative, got {self.n_boot}")

        model_positive = self._vector("model_positive", self.model_positive, DEFAULT_MODEL_POSITIVE)
        model_zero = self._vector("model_zero", self.model_zero, DEFAULT_MODEL_ZERO)
        k_positive = self._vector("k_positive", self.k_positive, DEFAULT_K_POSITIVE)
        k_zero = self._vector("k_zero", self.k_zero, DEFAULT_K_ZERO)

        if isinstance(self.family, str):
            families = [self.family] * len(self.ages)
        elif len(self.family) < len(self.ages):
            families = [self.family[0]] * len(self.ages)
            logger.warning(
                "length of family argument less than number of ages, only first element is used"
            )
        else:
            families = list(self.family)[:len(self.ages)]

        specs = []
        for i, age in enumerate(self.ages):
            if families[i] not in FAMILIES:
                raise ConfigurationError(f"family must be one of {FAMILIES}, got {families[i]!r}")
            spec = ModelSpec(
                age=age,
                formula_positive=model_positive[i],
                formula_zero=model_zero[i],
                k_positive=int(k_positive[i]),
                k_zero=int(k_zero[i]),
                family=families[i],
                cutoff=self.cutoff,
                gamma=self.gamma,
                lam=self.lam,
                use_bic=self.use_bic,
                knots_positive=self.knots_positive,
                knots_zero=self.knots_zero,
                max_iter=self.max_iter,
                tol=self.tol,
            )
            specs.append(spec)
        return specs


@dataclass
class AgeResult:
    """Output of one age class task.

    Attributes
    ----------
    age : int or str
        Age class label
    index, lower, upper : NDArray
        Point estimate and bootstrap bounds per year
    models : FittedModelPair
        Fitted two-part model
    cell_predictions : dict
        Year -> expected catch per grid cell (non-degenerate years only)
    last_prediction : NDArray, optional
        Per-cell predictions of the last non-degenerate year
    degenerate_years : list of int
        Years that fell back to a zero index
    """
    age: Union[int, str]
    index: NDArray
    lower: NDArray
    upper: NDArray
    models: FittedModelPair
    cell_predictions: Dict[int, NDArray] = field(default_factory=dict)
    last_prediction: Optional[NDArray] = None
    degenerate_years: List[int] = field(default_factory=list)

    @property
    def log_likelihood(self) -> float:
        return self.models.log_likelihood


@dataclass(frozen=True)
class IndexResult:
    """Survey indices for all ages.

    Attributes
    ----------
    years : NDArray
        Calendar years, increasing (rows of the matrices)
    ages : tuple
        Age labels (columns of the matrices)
    index : NDArray of shape (n_years, n_ages)
        Point estimates
    lower, upper : NDArray of shape (n_years, n_ages)
        Bootstrap bounds (zero where not computed)
    models : tuple of FittedModelPair
        Fitted models per age
    cell_predictions : tuple of dict
        Per age, year -> expected catch per grid cell
    last_predictions : tuple
        Per age, per-cell predictions of the last estimated year
    log_likelihood : float
        Total log-likelihood over all ages
    edf : float
        Total effective degrees of freedom over all ages and both parts
    n_obs : int
        Number of hauls
    """
    years: NDArray
    ages: Tuple
    index: NDArray
    lower: NDArray
    upper: NDArray
    models: Tuple[FittedModelPair, ...]
    cell_predictions: Tuple[Dict[int, NDArray], ...]
    last_predictions: Tuple[Optional[NDArray], ...]
    log_likelihood: float
    edf: float
    n_obs: int

    @property
    def zero_models(self) -> list:
        return [m.zero for m in self.models]

    @property
    def positive_models(self) -> list:
        return [m.positive for m in self.models]

    @property
    def positive_data(self) -> List[pd.DataFrame]:
        return [m.positive_data for m in self.models]

    @property
    def aic(self) -> float:
        return compute_aic(self.log_likelihood, self.edf)

    @property
    def bic(self) -> float:
        return compute_bic(self.log_likelihood, self.edf, self.n_obs)

    def to_frame(self, which: str = "index") -> pd.DataFrame:
        """One of the year x age matrices as a DataFrame.

        Parameters
        ----------
        which : {'index', 'lower', 'upper'}
        """
        if which not in ("index", "lower", "upper"):
            raise ValueError(f"which must be 'index', 'lower' or 'upper', got {which!r}")
        return pd.DataFrame(
            getattr(self, which),
            index=pd.Index(self.years, name="year"),
            columns=pd.Index(self.ages, name="age"),
        )

    def summary(self) -> Dict[str, float]:
        return {
            'log_likelihood': self.log_likelihood,
            'edf': self.edf,
            'aic': self.aic,
            'bic': self.bic,
            'n_obs': self.n_obs,
        }


def estimate_age_index(
    spec: ModelSpec,
    hauls: pd.DataFrame,
    response: NDArray,
    grid: PredictionGrid,
    reference: ReferenceCovariates,
    years: NDArray,
    n_boot: int = 0,
    random_state=None,
) -> AgeResult:
    """Fit, predict and bootstrap one age class.

    Raises
    ------
    FittingError
        If either model part fails to fit
    """
    start = time.perf_counter()
    logger.info(f"Age {spec.age}: fitting {spec.family} two-part model")

    models = TwoPartModelFitter(spec).fit(hauls, response)
    predictor = GridPredictor(models, grid, reference, hauls["year"], response)
    bootstrap = BootstrapEstimator(models, n_boot=n_boot, random_state=random_state)

    n_years = len(years)
    index = np.zeros(n_years)
    lower = np.zeros(n_years)
    upper = np.zeros(n_years)
    result = AgeResult(age=spec.age, index=index, lower=lower, upper=upper, models=models)

    for i, year in enumerate(years):
        prediction = predictor.predict_year(year)
        index[i] = prediction.index
        if prediction.degenerate:
            result.degenerate_years.append(int(year))
            continue
        result.cell_predictions[int(year)] = prediction.cells
        result.last_prediction = prediction.cells
        if bootstrap.enabled:
            lower[i], upper[i] = bootstrap.bounds(predictor.prediction_frame(year))

    logger.info(
        f"Age {spec.age}: done in {time.perf_counter() - start:.2f}s, "
        f"logLik={models.log_likelihood:.2f}, degenerate years={result.degenerate_years}"
    )
    return result


class AgeOrchestrator:
    """Runs every age class in parallel and assembles the index.

    Parameters
    ----------
    config : SurveyIndexConfig
        Run configuration

    Examples
    --------
    >>> config = SurveyIndexConfig(ages=[1, 2, 3], n_boot=500, random_state=1)
    >>> result = AgeOrchestrator(config).run(survey, grid)
    >>> result.to_frame("index")
    """

    def __init__(self, config: SurveyIndexConfig):
        self.config = config

    def _check_columns(
        self,
        specs: List[ModelSpec],
        survey: SurveyData,
        grid: PredictionGrid,
        reference: ReferenceCovariates,
    ) -> None:
        grid_columns = set(grid.cells.columns) | set(reference.columns)
        for spec in specs:
            for formula in (spec.positive_formula, spec.zero_formula):
                missing = [c for c in formula.columns if c not in survey.hauls.columns]
                if missing:
                    raise ConfigurationError(
                        f"Formula {formula.text!r} for age {spec.age} uses column(s) "
                        f"{missing} not in the survey data"
                    )
                missing = [c for c in formula.columns if c not in grid_columns]
                if missing:
                    raise ConfigurationError(
                        f"Formula {formula.text!r} for age {spec.age} uses column(s) "
                        f"{missing} not available on the prediction grid"
                    )

    def run(self, survey: SurveyData, grid: PredictionGrid) -> IndexResult:
        """Compute the survey index.

        Parameters
        ----------
        survey : SurveyData
            Hauls and numbers-at-age
        grid : PredictionGrid
            Cells to sum predictions over

        Returns
        -------
        IndexResult
            Year x age indices and diagnostics

        Raises
        ------
        ConfigurationError
            Before any fitting, if the configuration is inconsistent
        FittingError
            If any age class fails to fit; no partial result is returned
        """
        config = self.config
        specs = config.model_specs()
        columns = [survey.age_index(age) for age in config.ages]
        reference = ReferenceCovariates.from_survey(
            survey, haul_duration=config.haul_duration, standard_gear=config.standard_gear
        )
        self._check_columns(specs, survey, grid, reference)

        years = survey.years
        seeds = np.random.SeedSequence(config.random_state).spawn(len(specs))

        logger.info(
            f"Computing survey index for {len(specs)} ages over {years[0]}-{years[-1]} "
            f"with {config.n_jobs} worker(s), nBoot={config.n_boot}"
        )
        start = time.perf_counter()
        tasks = (
            delayed(estimate_age_index)(
                spec,
                survey.hauls,
                survey.response(column),
                grid,
                reference,
                years,
                config.n_boot,
                seed,
            )
            for spec, column, seed in zip(specs, columns, seeds)
        )
        try:
            results = Parallel(n_jobs=config.n_jobs, backend=config.backend)(tasks)
        except FittingError as e:
            logger.error(f"Survey index failed: {e}")
            raise

        logger.info(f"All ages done in {time.perf_counter() - start:.2f}s")
        return self._assemble(years, results, survey.n_hauls)

    def _assemble(self, years: NDArray, results: List[AgeResult], n_obs: int) -> IndexResult:
        ages = list(self.config.ages)
        shape = (len(years), len(ages))
        index = np.zeros(shape)
        lower = np.zeros(shape)
        upper = np.zeros(shape)
        by_column: List[Optional[AgeResult]] = [None] * len(ages)

        for result in results:
            column = ages.index(result.age)
            index[:, column] = result.index
            lower[:, column] = result.lower
            upper[:, column] = result.upper
            by_column[column] = result

        log_likelihood = float(sum(r.log_likelihood for r in by_column))
        edf = float(sum(r.models.zero.edf_ for r in by_column)) + float(
            sum(r.models.positive.edf_ for r in by_column)
        )

        for matrix in (index, lower, upper):
            matrix.setflags(write=False)

        return IndexResult(
            years=years,
            ages=tuple(ages),
            index=index,
            lower=lower,
            upper=upper,
            models=tuple(r.models for r in by_column),
            cell_predictions=tuple(r.cell_predictions for r in by_column),
            last_predictions=tuple(r.last_prediction for r in by_column),
            log_likelihood=log_likelihood,
            edf=edf,
            n_obs=n_obs,
        )


def get_survey_index(
    survey: SurveyData,
    grid: PredictionGrid,
    ages: Optional[Sequence] = None,
    **kwargs,
) -> IndexResult:
    """Calculate survey indices by age.

    Parameters
    ----------
    survey : SurveyData
        Hauls and numbers-at-age
    grid : PredictionGrid
        Cells to sum predictions over
    ages : sequence, optional
        Age classes to model; all ages in ``survey`` by default
    **kwargs
        Further :class:`SurveyIndexConfig` fields

    Returns
    -------
    IndexResult
    """
    config = SurveyIndexConfig(ages=list(ages) if ages is not None else survey.ages, **kwargs)
    return AgeOrchestrator(config).run(survey, grid)
