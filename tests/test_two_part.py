"""
Tests for the two-part model fitter.
"""

import pickle

import numpy as np
import pytest

from conftest import FORMULA_POSITIVE, FORMULA_ZERO
from survey_index.exceptions import ConfigurationError, FittingError, FormulaError
from survey_index.models.two_part import FittedModelPair, ModelSpec, TwoPartModelFitter


def make_spec(**kwargs):
    params = dict(age=1, formula_positive=FORMULA_POSITIVE, formula_zero=FORMULA_ZERO)
    params.update(kwargs)
    return ModelSpec(**params)


class TestModelSpec:
    """Tests for ModelSpec validation."""

    def test_defaults(self):
        spec = make_spec()
        assert spec.family == "Gamma"
        assert spec.gamma == 1.4
        assert spec.cutoff == 1.0

    def test_invalid_family(self):
        with pytest.raises(ConfigurationError):
            make_spec(family="Poisson")

    def test_invalid_formula(self):
        with pytest.raises(FormulaError):
            make_spec(formula_zero="year + s(depth")

    def test_k_placeholder(self):
        spec = make_spec(formula_positive="s(lon, lat, k=K)", k_positive=25)
        assert spec.positive_formula.terms[0].k == 25

    def test_default_lam_is_auto(self):
        assert make_spec().lam == "auto"

    @pytest.mark.parametrize("lam", [0, -1.0, "ml"])
    def test_invalid_lam(self, lam):
        with pytest.raises(ConfigurationError):
            make_spec(lam=lam)

    def test_knots_must_be_range(self):
        """Test that interior knot locations are rejected up front."""
        with pytest.raises(ConfigurationError, match="interior"):
            make_spec(knots_positive={'time_shot_hour': [0, 6, 12, 18, 24]})
        spec = make_spec(knots_zero={'time_shot_hour': (0, 24)})
        assert spec.knots_zero == {'time_shot_hour': (0, 24)}


class TestTwoPartModelFitter:
    """Tests for TwoPartModelFitter class."""

    def test_fit_gamma(self, survey):
        """Test basic two-part fit."""
        response = survey.response(0)
        models = TwoPartModelFitter(make_spec()).fit(survey.hauls, response)

        assert isinstance(models, FittedModelPair)
        assert models.zero.family == "binomial"
        assert models.positive.family == "gamma"
        assert len(models.positive_data) == int((response > 1).sum())
        np.testing.assert_allclose(models.positive_data['response'], response[response > 1])
        assert models.edf == pytest.approx(models.zero.edf_ + models.positive.edf_)
        assert models.residual_variance == 0.0

    def test_log_likelihood_gamma(self, survey):
        """Test total log-likelihood is the sum of both parts."""
        response = survey.response(0)
        models = TwoPartModelFitter(make_spec()).fit(survey.hauls, response)

        presence = response > 1
        p = models.zero.predict(survey.hauls)
        expected = (
            np.sum(np.log(1 - p[~presence]))
            + np.sum(np.log(p[presence]))
            + models.positive.loglik_
        )
        assert models.log_likelihood == pytest.approx(expected)

    def test_log_likelihood_lognormal(self, lognormal_survey):
        """Test the Jacobian correction of the log-normal likelihood."""
        response = lognormal_survey.response(0)
        models = TwoPartModelFitter(make_spec(family="LogNormal")).fit(
            lognormal_survey.hauls, response
        )

        presence = response > 1
        p = models.zero.predict(lognormal_survey.hauls)
        expected = (
            np.sum(np.log(1 - p[~presence]))
            + np.sum(np.log(p[presence]))
            + models.positive.loglik_
            - np.sum(np.log(response[presence]))
        )
        assert models.positive.family == "normal"
        assert models.residual_variance == pytest.approx(models.positive.scale_)
        assert models.log_mean_correction == pytest.approx(models.positive.scale_ / 2)
        assert models.log_likelihood == pytest.approx(expected)

    def test_fixed_gamma(self, survey):
        models = TwoPartModelFitter(make_spec(gamma=2.0)).fit(survey.hauls, survey.response(0))
        assert models.gamma_zero == 2.0
        assert models.gamma_positive == 2.0

    def test_bic_penalty(self, survey):
        """Test BIC-derived penalty factors for each part."""
        response = survey.response(1)
        models = TwoPartModelFitter(make_spec(use_bic=True)).fit(survey.hauls, response)

        assert models.gamma_zero == pytest.approx(np.log(survey.n_hauls) / 2)
        assert models.gamma_positive == pytest.approx(np.log((response > 1).sum()) / 2)

    def test_penalty_scales_selected_smoothing(self, survey):
        """Test BIC factors multiply the grid-search smoothing weights of each part."""
        response = survey.response(0)
        plain = TwoPartModelFitter(make_spec(gamma=1.0)).fit(survey.hauls, response)
        bic = TwoPartModelFitter(make_spec(use_bic=True)).fit(survey.hauls, response)

        np.testing.assert_allclose(bic.positive.lam_, bic.gamma_positive * plain.positive.lam_)
        np.testing.assert_allclose(bic.zero.lam_, bic.gamma_zero * plain.zero.lam_)
        assert np.any(bic.positive.lam_ != plain.positive.lam_)

    def test_cutoff(self, survey):
        response = survey.response(0)
        models = TwoPartModelFitter(make_spec(cutoff=3.0)).fit(survey.hauls, response)
        assert len(models.positive_data) == int((response > 3.0).sum())

    def test_no_positive_observations(self, survey):
        """Test that an age without catches fails its positive part."""
        with pytest.raises(FittingError) as excinfo:
            TwoPartModelFitter(make_spec(age=4)).fit(survey.hauls, np.zeros(survey.n_hauls))

        assert excinfo.value.age == 4
        assert excinfo.value.part == "positive"

    def test_numerical_failure(self, survey):
        """Test that solver errors surface as FittingError with age and part."""
        hauls = survey.hauls.copy()
        hauls.loc[:, 'depth'] = np.nan

        with pytest.raises(FittingError) as excinfo:
            TwoPartModelFitter(make_spec(age=2)).fit(hauls, survey.response(1))

        assert excinfo.value.age == 2
        assert excinfo.value.part == "positive"
        assert "age 2" in str(excinfo.value)


class TestFittingError:
    """Tests for FittingError."""

    def test_message(self):
        err = FittingError(3, "binomial", "singular matrix")
        assert str(err) == (
            "Error occurred for age 3 in the binomial part of the model: singular matrix"
        )

    def test_pickle(self):
        """Test the error survives transfer between worker processes."""
        err = pickle.loads(pickle.dumps(FittingError(3, "binomial", "singular matrix")))

        assert isinstance(err, FittingError)
        assert err.age == 3
        assert err.part == "binomial"
        assert err.reason == "singular matrix"
