"""
Model classes for survey-index.

This module contains the model implementations:
- SmoothGAM: Penalised smooth regression defined by a formula string
- ModelSpec: Per-age configuration of the two-part model
- TwoPartModelFitter: Fits presence/absence and positive-catch models
- FittedModelPair: Fitted two-part model of one age class
"""

from survey_index.models.smooth import ConvergenceError, SmoothGAM
from survey_index.models.two_part import FittedModelPair, ModelSpec, TwoPartModelFitter

__all__ = [
    "ConvergenceError",
    "SmoothGAM",
    "ModelSpec",
    "TwoPartModelFitter",
    "FittedModelPair",
]
