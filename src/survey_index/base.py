"""Base classes for survey-index models."""

from __future__ import annotations

import pickle
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from survey_index.utils import compute_aic, compute_bic


class BaseEstimator(ABC):
    """Base class for all estimators in survey-index.

    Provides common functionality for model fitting, validation, and serialization.
    """

    def __init__(self):
        """Initialize base estimator."""
        self.is_fitted_ = False

    def _check_fitted(self) -> None:
        """Check if model is fitted.

        Raises
        ------
        RuntimeError
            If model is not fitted
        """
        if not self.is_fitted_:
            raise RuntimeError("Model not fitted. Call fit() first.")

    @abstractmethod
    def fit(self, *args, **kwargs) -> BaseEstimator:
        """Fit the model.

        This method must be implemented by subclasses.
        """
        pass

    @abstractmethod
    def predict(self, *args, **kwargs) -> Any:
        """Generate predictions.

        This method must be implemented by subclasses.
        """
        pass

    @abstractmethod
    def _get_state_dict(self) -> Dict[str, Any]:
        """Get model state for serialization.

        Returns
        -------
        dict
            Dictionary containing model state
        """
        pass

    @abstractmethod
    def _set_state_dict(self, state: Dict[str, Any]) -> None:
        """Set model state from deserialization.

        Parameters
        ----------
        state : dict
            Dictionary containing model state
        """
        pass

    def save(self, filepath: str | Path) -> None:
        """Save model to disk using pickle.

        Parameters
        ----------
        filepath : str or Path
            Path to save the model

        Raises
        ------
        RuntimeError
            If model is not fitted
        """
        self._check_fitted()

        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        state = self._get_state_dict()

        with open(filepath, 'wb') as f:
            pickle.dump(state, f)

    @classmethod
    def load(cls, filepath: str | Path) -> BaseEstimator:
        """Load model from disk.

        Parameters
        ----------
        filepath : str or Path
            Path to the saved model

        Returns
        -------
        BaseEstimator
            Loaded model instance

        Raises
        ------
        FileNotFoundError
            If the file does not exist
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"Model file not found: {filepath}")

        with open(filepath, 'rb') as f:
            state = pickle.load(f)

        # Create instance and restore state
        model = cls.__new__(cls)
        model._set_state_dict(state)
        model.is_fitted_ = True

        return model


class ModelSummary:
    """Container for fitted model summary statistics.

    Attributes
    ----------
    family : str
        Response distribution
    log_likelihood : float
        Log-likelihood at the fitted coefficients
    edf : float
        Total effective degrees of freedom
    n_obs : int
        Number of observations
    scale : float
        Estimated scale (dispersion) parameter
    aic : float
        Akaike Information Criterion based on ``edf``
    bic : float
        Bayesian Information Criterion based on ``edf``
    additional : dict
        Additional model-specific metrics
    """

    def __init__(
        self,
        family: str,
        log_likelihood: float,
        edf: float,
        n_obs: int,
        scale: Optional[float] = None,
        **additional,
    ):
        self.family = family
        self.log_likelihood = log_likelihood
        self.edf = edf
        self.n_obs = n_obs
        self.scale = scale
        self.aic = compute_aic(log_likelihood, edf)
        self.bic = compute_bic(log_likelihood, edf, n_obs)
        self.additional = additional

    def __repr__(self) -> str:
        """String representation of summary."""
        lines = ["Model Summary", "=" * 40]

        lines.append(f"Family:    {self.family}")
        lines.append(f"LogLik:    {self.log_likelihood:.2f}")
        lines.append(f"EDF:       {self.edf:.2f}")
        lines.append(f"AIC:       {self.aic:.2f}")
        lines.append(f"BIC:       {self.bic:.2f}")
        lines.append(f"Obs:       {self.n_obs}")
        if self.scale is not None:
            lines.append(f"Scale:     {self.scale:.4f}")

        if self.additional:
            lines.append("")
            lines.append("Additional Metrics:")
            for key, value in self.additional.items():
                if isinstance(value, float):
                    lines.append(f"  {key}: {value:.4f}")
                else:
                    lines.append(f"  {key}: {value}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert summary to dictionary.

        Returns
        -------
        dict
            Summary as dictionary
        """
        result = {
            'family': self.family,
            'log_likelihood': self.log_likelihood,
            'edf': self.edf,
            'n_obs': self.n_obs,
            'scale': self.scale,
            'aic': self.aic,
            'bic': self.bic,
        }
        result.update(self.additional)
        return {k: v for k, v in result.items() if v is not None}
