"""
Survey data containers.

- SurveyData: haul covariates plus numbers-at-age per haul
- PredictionGrid: representative locations the index is summed over
- ReferenceCovariates: standardised values for nuisance covariates
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from survey_index.exceptions import ConfigurationError
from survey_index.utils import ensure_array, most_common

logger = logging.getLogger(__name__)

FACTOR_COLUMNS = ("year", "gear", "ship")
GRID_COLUMNS = ("lon", "lat", "depth")


class SurveyData:
    """Trawl survey hauls with numbers-at-age.

    Parameters
    ----------
    hauls : pd.DataFrame
        One row per haul. Must contain ``year``; typically also ``haul_id``,
        ``lon``, ``lat``, ``depth``, ``gear``, ``ship``, ``time_of_year``,
        ``time_shot_hour`` and ``haul_dur``.
    numbers_at_age : array-like of shape (n_hauls, n_ages)
        Numbers caught per haul and age class
    ages : sequence, optional
        Age labels of the columns of ``numbers_at_age``. Defaults to the
        DataFrame columns when a DataFrame is given, else ``0..n_ages-1``.

    Examples
    --------
    >>> survey = SurveyData(hauls, nage, ages=[1, 2, 3])
    >>> survey.years
    array([2001, 2002, 2003])
    """

    def __init__(
        self,
        hauls: pd.DataFrame,
        numbers_at_age: Union[NDArray, pd.DataFrame],
        ages: Optional[Sequence] = None,
    ):
        if "year" not in hauls.columns:
            raise ConfigurationError("hauls must have a 'year' column")

        if ages is None and isinstance(numbers_at_age, pd.DataFrame):
            ages = list(numbers_at_age.columns)
        nage = ensure_array(numbers_at_age).astype(float)
        if nage.ndim == 1:
            nage = nage[:, None]
        if nage.shape[0] != len(hauls):
            raise ConfigurationError(
                f"numbers_at_age has {nage.shape[0]} rows but there are {len(hauls)} hauls"
            )
        if ages is None:
            ages = list(range(nage.shape[1]))
        if len(ages) != nage.shape[1]:
            raise ConfigurationError(
                f"{len(ages)} age labels for {nage.shape[1]} numbers-at-age columns"
            )

        hauls = hauls.reset_index(drop=True).copy()
        hauls["year"] = hauls["year"].astype(int)
        for column in FACTOR_COLUMNS:
            if column in hauls.columns:
                hauls[column] = hauls[column].astype("category")

        self.hauls = hauls
        self.numbers_at_age = nage
        self.ages = list(ages)

    @classmethod
    def from_long(
        cls,
        records: pd.DataFrame,
        age_column: str = "age",
        value_column: str = "n_at_age",
        haul_column: str = "haul_id",
        ages: Optional[Sequence] = None,
    ) -> "SurveyData":
        """Build from one record per haul and age.

        Every other column is a haul attribute and must be constant within a haul.
        Missing haul/age combinations count as zero catch.
        """
        for column in (age_column, value_column, haul_column):
            if column not in records.columns:
                raise ConfigurationError(f"records must have a {column!r} column")

        hauls = records.drop(columns=[age_column, value_column]).drop_duplicates()
        if hauls[haul_column].duplicated().any():
            bad = hauls.loc[hauls[haul_column].duplicated(), haul_column].unique()[:5]
            raise ConfigurationError(f"Inconsistent haul attributes for haul(s) {list(bad)}")

        nage = records.pivot_table(
            index=haul_column,
            columns=age_column,
            values=value_column,
            aggfunc="sum",
            fill_value=0.0,
        )
        if ages is not None:
            nage = nage.reindex(columns=list(ages), fill_value=0.0)
        hauls = hauls.set_index(haul_column).loc[nage.index].reset_index()
        return cls(hauls, nage.values, ages=list(nage.columns))

    @property
    def n_hauls(self) -> int:
        return len(self.hauls)

    @property
    def n_ages(self) -> int:
        return self.numbers_at_age.shape[1]

    @property
    def years(self) -> NDArray:
        """Every calendar year from the first to the last survey year."""
        years = self.hauls["year"].astype(int)
        return np.arange(years.min(), years.max() + 1)

    def age_index(self, age) -> int:
        """Column of ``numbers_at_age`` holding ``age``."""
        try:
            return self.ages.index(age)
        except ValueError:
            raise ConfigurationError(f"Age {age!r} not in survey data ages {self.ages}")

    def response(self, age_index: int) -> NDArray:
        """Numbers-at-age for one column."""
        return self.numbers_at_age[:, age_index]


class PredictionGrid:
    """Ordered cells over which annual indices are summed.

    Parameters
    ----------
    cells : pd.DataFrame
        One row per cell with at least ``lon``, ``lat`` and ``depth``
    """

    def __init__(self, cells: pd.DataFrame):
        missing = [c for c in GRID_COLUMNS if c not in cells.columns]
        if missing:
            raise ConfigurationError(f"Prediction grid is missing column(s) {missing}")
        if len(cells) == 0:
            raise ConfigurationError("Prediction grid has no cells")
        self.cells = cells.reset_index(drop=True).copy()

    @classmethod
    def from_hauls(
        cls,
        survey: SurveyData,
        haul_ids: Iterable,
        haul_column: str = "haul_id",
    ) -> "PredictionGrid":
        """Use a set of representative hauls as grid cells, in data order."""
        ids = set(haul_ids)
        cells = survey.hauls.loc[survey.hauls[haul_column].isin(ids)]
        return cls(cells)

    def __len__(self) -> int:
        return len(self.cells)


@dataclass(frozen=True)
class ReferenceCovariates:
    """Standardised covariate values used when predicting on the grid.

    Attributes
    ----------
    values : dict
        Column name -> value fixed over the grid for every year
    """
    values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_survey(
        cls,
        survey: SurveyData,
        haul_duration: float = 30.0,
        standard_gear: str = "GOV",
    ) -> "ReferenceCovariates":
        """Mean time covariates, most common ship, standard gear and haul duration.

        Falls back to the most common gear if ``standard_gear`` is not in the data.
        The ship only matters where it enters a model as a fixed effect;
        ``s(ship, bs='re')`` terms are left out of grid predictions.
        """
        hauls = survey.hauls
        values: Dict[str, Any] = {"haul_dur": haul_duration}
        for column in ("time_shot_hour", "time_of_year"):
            if column in hauls.columns:
                values[column] = float(hauls[column].mean())
        if "ship" in hauls.columns:
            values["ship"] = most_common(hauls["ship"])
        if "gear" in hauls.columns:
            gears = set(hauls["gear"].dropna().tolist())
            if standard_gear in gears:
                values["gear"] = standard_gear
            else:
                values["gear"] = most_common(hauls["gear"])
                logger.warning(
                    f"{standard_gear} gear not found. Standard gear chosen to be: {values['gear']}"
                )
        return cls(values)

    @property
    def columns(self) -> List[str]:
        return ["year", "ctime"] + list(self.values)

    def frame_for_year(self, grid: PredictionGrid, year: int) -> pd.DataFrame:
        """Grid cells with the year and reference covariates filled in."""
        frame = grid.cells.copy()
        frame["year"] = int(year)
        frame["ctime"] = float(year)
        for column, value in self.values.items():
            frame[column] = value
        return frame
