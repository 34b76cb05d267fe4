"""
Smooth-term formula language for the two-part survey index models.

Formulas are plain strings such as::

    year + s(lon, lat, k=K) + s(depth, k=6) + s(ship, bs='re') + offset(log(haul_dur))

Supported terms
---------------
name
    Unpenalised factor term for categorical columns, linear term otherwise.
f(name)
    Unpenalised factor term (dummy coded against the first level).
l(name)
    Unpenalised linear term.
s(name, bs='re')
    Random effect: penalised one-hot factor term. Random effects are left out
    of predictions on the survey grid, so the index is for an average level.
s(x, ...)
    Penalised regression spline. ``bs`` selects the basis: ``'cc'``/``'cp'``
    give a cyclic spline, anything else a P-spline.
s(x, y, ...), te(x, y, ...)
    Tensor-product smooth. ``k`` is the total basis size; each margin gets
    roughly ``k ** (1/d)`` basis functions.
offset(x), offset(log(x))
    Additive offset on the link scale.

The placeholder ``k=K`` is replaced by the basis dimension passed to
:func:`parse_formula`, so formulas never depend on variables defined elsewhere.
"""

from __future__ import annotations

import functools
import logging
import operator
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
import pandas as pd

from pygam import f, l, s, te

from survey_index.exceptions import FormulaError, PredictionError

logger = logging.getLogger(__name__)

_NAME = r"[A-Za-z_][A-Za-z0-9_.]*"
_NAME_RE = re.compile(rf"^{_NAME}$")
_CALL_RE = re.compile(rf"^({_NAME})\s*\((.*)\)$", re.DOTALL)

CYCLIC_BASES = {"cc", "cp"}
SPLINE_BASES = {"ps", "ts", "tp", "cr", "cs"} | CYCLIC_BASES
TRANSFORMS = {"log": np.log}
DEFAULT_BASIS_DIM = 10
DEFAULT_MARGIN_DIM = 5


@dataclass(frozen=True)
class Covariate:
    """A data column, optionally transformed.

    Attributes
    ----------
    column : str
        Column name in the data frame
    transform : str, optional
        Name of a transform applied to the column (only ``'log'``)
    """
    column: str
    transform: Optional[str] = None

    @property
    def label(self) -> str:
        if self.transform:
            return f"{self.transform}({self.column})"
        return self.column

    def evaluate(self, data: pd.DataFrame) -> pd.Series:
        """Pull the covariate out of ``data``."""
        values = data[self.column]
        if self.transform:
            values = pd.Series(
                TRANSFORMS[self.transform](values.astype(float)),
                index=values.index,
            )
        return values


@dataclass(frozen=True)
class TermSpec:
    """One additive term of a formula.

    Attributes
    ----------
    kind : {'auto', 'factor', 'linear', 'random', 'spline', 'tensor'}
        Term type. ``'auto'`` is resolved from the column dtype at fit time.
    covariates : tuple of Covariate
        Columns the term depends on
    k : int, optional
        Basis dimension (splines and tensors)
    basis : str
        Spline basis name
    lam : float, optional
        Term-specific smoothing weight
    """
    kind: str
    covariates: Tuple[Covariate, ...]
    k: Optional[int] = None
    basis: str = "ps"
    lam: Optional[float] = None


@dataclass(frozen=True)
class Formula:
    """Parsed right-hand side of a model formula."""
    text: str
    terms: Tuple[TermSpec, ...]
    offsets: Tuple[Covariate, ...] = ()

    @property
    def covariates(self) -> List[Covariate]:
        """Covariates used by the terms, in order of first appearance."""
        seen: List[Covariate] = []
        for term in self.terms:
            for cov in term.covariates:
                if cov not in seen:
                    seen.append(cov)
        return seen

    @property
    def columns(self) -> List[str]:
        """All data columns referenced, offsets included."""
        names: List[str] = []
        for cov in self.covariates + list(self.offsets):
            if cov.column not in names:
                names.append(cov.column)
        return names

    def __str__(self) -> str:
        return self.text


def _split_top_level(text: str, sep: str) -> List[str]:
    """Split on ``sep`` outside parentheses and quotes."""
    parts = []
    depth = 0
    quote = None
    current = []
    for char in text:
        if quote:
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise FormulaError(f"Unbalanced parentheses in formula: {text!r}")
        elif char == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if depth != 0 or quote:
        raise FormulaError(f"Unbalanced parentheses or quotes in formula: {text!r}")
    parts.append("".join(current).strip())
    return parts


def _parse_covariate(text: str, allow_transform: bool = False) -> Covariate:
    if _NAME_RE.match(text):
        return Covariate(text)
    match = _CALL_RE.match(text)
    if allow_transform and match and match.group(1) in TRANSFORMS:
        inner = match.group(2).strip()
        if _NAME_RE.match(inner):
            return Covariate(inner, match.group(1))
    raise FormulaError(f"Invalid variable expression: {text!r}")


def _parse_k(value: str, basis_dim: Optional[int]) -> int:
    if value == "K":
        if basis_dim is None:
            raise FormulaError("Formula uses k=K but no basis dimension was given")
        return int(basis_dim)
    try:
        k = int(value)
    except ValueError:
        raise FormulaError(f"Basis dimension must be an integer or K, got {value!r}")
    if k < 1:
        raise FormulaError(f"Basis dimension must be positive, got {k}")
    return k


def _parse_call(name: str, inner: str, basis_dim: Optional[int]):
    positional: List[str] = []
    keywords: Dict[str, str] = {}
    for arg in _split_top_level(inner, ","):
        if not arg:
            raise FormulaError(f"Empty argument in {name}({inner})")
        key, eq, value = arg.partition("=")
        if eq and _NAME_RE.match(key.strip()):
            keywords[key.strip()] = value.strip().strip("'\"")
        else:
            positional.append(arg)

    if name == "offset":
        if len(positional) != 1 or keywords:
            raise FormulaError(f"offset() takes exactly one variable: offset({inner})")
        return _parse_covariate(positional[0], allow_transform=True)

    unknown = set(keywords) - {"k", "bs", "lam"}
    if unknown:
        raise FormulaError(f"Unknown argument(s) {sorted(unknown)} in {name}({inner})")
    if not positional:
        raise FormulaError(f"{name}() needs at least one variable")

    covariates = tuple(_parse_covariate(arg) for arg in positional)
    k = _parse_k(keywords["k"], basis_dim) if "k" in keywords else None
    basis = keywords.get("bs", "ps")
    try:
        lam = float(keywords["lam"]) if "lam" in keywords else None
    except ValueError:
        raise FormulaError(f"lam must be numeric in {name}({inner})")

    if name in ("f", "l"):
        if len(covariates) != 1:
            raise FormulaError(f"{name}() takes a single variable")
        return TermSpec("factor" if name == "f" else "linear", covariates, lam=lam)

    if name not in ("s", "te"):
        raise FormulaError(f"Unknown term function {name!r}")

    if basis == "re":
        if len(covariates) != 1:
            raise FormulaError("Random effect smooths take a single variable")
        return TermSpec("random", covariates, lam=lam)
    if basis not in SPLINE_BASES:
        raise FormulaError(f"Unsupported basis {basis!r}")
    kind = "spline" if len(covariates) == 1 else "tensor"
    return TermSpec(kind, covariates, k=k, basis=basis, lam=lam)


def parse_formula(text: str, basis_dim: Optional[int] = None) -> Formula:
    """Parse a formula string.

    Parameters
    ----------
    text : str
        Right-hand side of the model formula
    basis_dim : int, optional
        Value substituted for ``k=K``

    Returns
    -------
    Formula
        Parsed formula

    Raises
    ------
    FormulaError
        If the formula cannot be parsed
    """
    if not isinstance(text, str) or not text.strip():
        raise FormulaError("Formula must be a non-empty string")

    terms: List[TermSpec] = []
    offsets: List[Covariate] = []
    for part in _split_top_level(text.strip(), "+"):
        if not part:
            raise FormulaError(f"Empty term in formula: {text!r}")
        if _NAME_RE.match(part):
            terms.append(TermSpec("auto", (Covariate(part),)))
            continue
        match = _CALL_RE.match(part)
        if not match:
            raise FormulaError(f"Cannot parse term {part!r}")
        parsed = _parse_call(match.group(1), match.group(2).strip(), basis_dim)
        if isinstance(parsed, Covariate):
            offsets.append(parsed)
        else:
            terms.append(parsed)

    if not terms:
        raise FormulaError(f"Formula has no model terms: {text!r}")
    return Formula(text=text.strip(), terms=tuple(terms), offsets=tuple(offsets))


def is_factor(values: pd.Series) -> bool:
    """Whether a column is treated as categorical."""
    return (
        isinstance(values.dtype, pd.CategoricalDtype)
        or pd.api.types.is_bool_dtype(values)
        or not pd.api.types.is_numeric_dtype(values)
    )


def _observed_levels(values: pd.Series) -> list:
    values = values.dropna()
    if isinstance(values.dtype, pd.CategoricalDtype):
        return list(values.cat.remove_unused_categories().cat.categories)
    return sorted(values.unique().tolist())


def knot_range(column: str, knots: Sequence[float]) -> NDArray:
    """Validate explicit knots for ``column`` as a ``(lower, upper)`` range.

    pygam places its knots evenly between the edge knots, so only the range
    can be given.
    """
    knots = np.asarray(knots, dtype=float)
    if knots.shape != (2,) or not knots[0] < knots[1]:
        raise FormulaError(
            f"Knots for {column!r} must be an increasing (lower, upper) pair, "
            f"got {knots.tolist()}; interior knot locations are not supported"
        )
    return knots


class ModelFrame:
    """Turns data frames into numeric pygam input for a formula.

    Factor levels are learnt in :meth:`fit` and reused for new data, so that
    the same level always maps to the same model coefficient.

    Parameters
    ----------
    formula : Formula
        Parsed formula
    lam : float
        Smoothing weight for penalised terms that do not set their own
    penalty : float
        Multiplier applied to every penalised term's smoothing weight
    spline_order : int
        Order of the B-spline bases
    knots : mapping, optional
        Column name -> ``(lower, upper)`` range spanned by the spline basis
    offsets_as_terms : bool
        Enter offsets as free linear terms instead of fixed offsets
    """

    def __init__(
        self,
        formula: Formula,
        lam: float = 0.6,
        penalty: float = 1.0,
        spline_order: int = 3,
        knots: Optional[Mapping[str, Sequence[float]]] = None,
        offsets_as_terms: bool = False,
    ):
        self.formula = formula
        self.lam = lam
        self.penalty = penalty
        self.spline_order = spline_order
        self.knots = {
            column: knot_range(column, values) for column, values in (knots or {}).items()
        }
        self.offsets_as_terms = offsets_as_terms

        self.terms_: Optional[List[TermSpec]] = None
        self.features_: Optional[List[Covariate]] = None
        self.levels_: Dict[Covariate, list] = {}
        self.random_terms_: List[int] = []
        self.random_only_: List[Covariate] = []

    def fit(self, data: pd.DataFrame) -> "ModelFrame":
        """Resolve term types and learn factor levels from ``data``."""
        missing = [c for c in self.formula.columns if c not in data.columns]
        if missing:
            raise FormulaError(
                f"Formula {self.formula.text!r} references missing column(s): {missing}"
            )

        terms = []
        for term in self.formula.terms:
            if term.kind == "auto":
                cov = term.covariates[0]
                kind = "factor" if is_factor(cov.evaluate(data)) else "linear"
                term = TermSpec(kind, term.covariates, lam=term.lam)
            terms.append(term)

        if self.offsets_as_terms:
            for cov in self.formula.offsets:
                terms.append(TermSpec("linear", (cov,)))

        features: List[Covariate] = []
        for term in terms:
            for cov in term.covariates:
                if cov not in features:
                    features.append(cov)

        self.levels_ = {}
        for term in terms:
            cov = term.covariates[0]
            if term.kind in ("factor", "random"):
                self.levels_[cov] = _observed_levels(cov.evaluate(data))
            else:
                for c in term.covariates:
                    if is_factor(c.evaluate(data)) and not pd.api.types.is_bool_dtype(data[c.column]):
                        raise FormulaError(
                            f"Column {c.column!r} is categorical and cannot enter a "
                            f"{term.kind} term"
                        )

        self.random_terms_ = [i for i, term in enumerate(terms) if term.kind == "random"]
        fixed = {cov for term in terms if term.kind != "random" for cov in term.covariates}
        self.random_only_ = [
            terms[i].covariates[0] for i in self.random_terms_
            if terms[i].covariates[0] not in fixed
        ]
        self.terms_ = terms
        self.features_ = features
        return self

    def transform(self, data: pd.DataFrame, include_random: bool = True) -> NDArray:
        """Numeric feature matrix, one column per covariate.

        With ``include_random=False`` covariates that only enter random
        effects are not read from ``data``; they are filled with the first
        level, since their model columns are dropped anyway.

        Raises
        ------
        PredictionError
            If a column is missing, non-numeric, or a factor level is unseen
        """
        if self.features_ is None:
            raise RuntimeError("ModelFrame not fitted. Call fit() first.")

        X = np.empty((len(data), len(self.features_)), dtype=float)
        for j, cov in enumerate(self.features_):
            if not include_random and cov in self.random_only_:
                X[:, j] = 0
                continue
            if cov.column not in data.columns:
                raise PredictionError(f"Missing column {cov.column!r}")
            values = cov.evaluate(data)
            if cov in self.levels_:
                codes = pd.Index(self.levels_[cov]).get_indexer(np.asarray(values))
                if (codes < 0).any():
                    unseen = sorted(set(np.asarray(values)[codes < 0].astype(str)))
                    raise PredictionError(
                        f"Unseen level(s) {unseen} for factor {cov.label!r}"
                    )
                X[:, j] = codes
            else:
                try:
                    X[:, j] = np.asarray(values, dtype=float)
                except (TypeError, ValueError) as e:
                    raise PredictionError(f"Column {cov.label!r} is not numeric: {e}") from e
        return X

    def offset(self, data: pd.DataFrame) -> NDArray:
        """Sum of the formula's offsets for each row (zeros if none)."""
        total = np.zeros(len(data), dtype=float)
        if self.offsets_as_terms:
            return total
        for cov in self.formula.offsets:
            if cov.column not in data.columns:
                raise PredictionError(f"Missing offset column {cov.column!r}")
            total += np.asarray(cov.evaluate(data), dtype=float)
        return total

    def _margin_dim(self, term: TermSpec) -> int:
        d = len(term.covariates)
        n = int(round(term.k ** (1.0 / d))) if term.k else DEFAULT_MARGIN_DIM
        return max(n, self.spline_order + 1)

    def _penalised_lam(self, term: TermSpec) -> float:
        return (term.lam if term.lam is not None else self.lam) * self.penalty

    def _fixed_lam(self, term: TermSpec) -> float:
        # Fixed effects carry no penalty unless the formula sets one
        return term.lam * self.penalty if term.lam is not None else 0.0

    def _spline(self, cov: Covariate, n_splines: int, basis: str, lam: float):
        # pygam requires n_splines > spline_order; bump if the formula asks for too few
        if n_splines <= self.spline_order:
            logger.info(
                "Increasing n_splines for %s from %d to %d to satisfy pygam constraint "
                "n_splines > spline_order",
                cov.label,
                n_splines,
                self.spline_order + 1,
            )
            n_splines = self.spline_order + 1
        kwargs = dict(
            n_splines=n_splines,
            spline_order=self.spline_order,
            lam=lam,
            basis="cp" if basis in CYCLIC_BASES else "ps",
        )
        if cov.column in self.knots:
            kwargs["edge_knots"] = self.knots[cov.column]
        return s(self.features_.index(cov), **kwargs)

    def build_terms(self):
        """Compile the fitted frame into a pygam term list."""
        if self.terms_ is None:
            raise RuntimeError("ModelFrame not fitted. Call fit() first.")

        compiled = []
        for term in self.terms_:
            index = self.features_.index(term.covariates[0])
            if term.kind == "factor":
                compiled.append(f(index, lam=self._fixed_lam(term), coding="dummy"))
            elif term.kind == "linear":
                compiled.append(l(index, lam=self._fixed_lam(term)))
            elif term.kind == "random":
                compiled.append(f(index, lam=self._penalised_lam(term)))
            elif term.kind == "spline":
                n = term.k if term.k is not None else DEFAULT_BASIS_DIM
                compiled.append(
                    self._spline(term.covariates[0], n, term.basis, self._penalised_lam(term))
                )
            else:
                margin = self._margin_dim(term)
                compiled.append(te(*[
                    self._spline(cov, margin, term.basis, self._penalised_lam(term))
                    for cov in term.covariates
                ]))
        return functools.reduce(operator.add, compiled)
