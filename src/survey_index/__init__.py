"""
survey-index: age-based abundance indices from bottom-trawl survey data.

For each age class a two-part (presence/absence and positive catch) smooth
regression is fitted over hauls, predicted over a standard grid for every
survey year, and summed into an annual index with bootstrap confidence bounds.

Example
-------
>>> from survey_index import SurveyData, PredictionGrid, get_survey_index
>>> survey = SurveyData(hauls, numbers_at_age, ages=[1, 2, 3])
>>> grid = PredictionGrid.from_hauls(survey, grid_haul_ids)
>>> result = get_survey_index(survey, grid, cutoff=0.1, n_boot=500, random_state=1)
>>> result.to_frame("index")
"""

__version__ = "0.1.0"

# Data containers
from survey_index.data import PredictionGrid, ReferenceCovariates, SurveyData

# Models
from survey_index.models import FittedModelPair, ModelSpec, SmoothGAM, TwoPartModelFitter

# Index computation
from survey_index.prediction import GridPredictor, YearPrediction
from survey_index.bootstrap import BootstrapEstimator
from survey_index.index import (
    AgeOrchestrator,
    AgeResult,
    IndexResult,
    SurveyIndexConfig,
    get_survey_index,
)

# Errors
from survey_index.exceptions import (
    ConfigurationError,
    FittingError,
    FormulaError,
    PredictionError,
    SurveyIndexError,
)

__all__ = [
    # Data
    "SurveyData",
    "PredictionGrid",
    "ReferenceCovariates",
    # Models
    "SmoothGAM",
    "ModelSpec",
    "TwoPartModelFitter",
    "FittedModelPair",
    # Index
    "GridPredictor",
    "YearPrediction",
    "BootstrapEstimator",
    "AgeOrchestrator",
    "AgeResult",
    "IndexResult",
    "SurveyIndexConfig",
    "get_survey_index",
    # Errors
    "SurveyIndexError",
    "ConfigurationError",
    "FormulaError",
    "FittingError",
    "PredictionError",
    # Metadata
    "__version__",
]
