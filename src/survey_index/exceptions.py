"""Exception hierarchy for survey-index."""

from __future__ import annotations

from typing import Optional


class SurveyIndexError(Exception):
    """Base class for all survey-index errors."""


class ConfigurationError(SurveyIndexError, ValueError):
    """Invalid run configuration, raised before any model is fitted."""


class FormulaError(ConfigurationError):
    """A model formula could not be parsed or does not match the data."""


class PredictionError(SurveyIndexError):
    """A fitted model could not be evaluated on new covariate rows."""


class FittingError(SurveyIndexError):
    """A model fit failed for one age class.

    Parameters
    ----------
    age : int or str
        Age class label
    part : {'positive', 'binomial'}
        Which part of the two-part model failed
    reason : str
        Underlying error message
    """

    def __init__(self, age, part: str, reason: Optional[str] = None):
        self.age = age
        self.part = part
        self.reason = reason
        message = f"Error occurred for age {age} in the {part} part of the model"
        if reason:
            message += f": {reason}"
        super().__init__(message)

    def __reduce__(self):
        # Rebuild from the original fields when crossing process boundaries
        return (self.__class__, (self.age, self.part, self.reason))
