"""
Tests for the SmoothGAM solver adapter.
"""

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from survey_index.base import ModelSummary
from survey_index.models.smooth import SmoothGAM


@pytest.fixture
def positive_hauls(survey):
    y = survey.response(0)
    mask = y > 1
    return survey.hauls.loc[mask].reset_index(drop=True), y[mask]


class TestSmoothGAM:
    """Tests for SmoothGAM class."""

    def test_initialization(self):
        """Test model initialization."""
        model = SmoothGAM("year + s(lon, lat, k=K)", family="gamma", basis_dim=16)

        assert model.family == "gamma"
        assert model.formula.terms[1].k == 16
        assert not model.is_fitted_

    def test_invalid_family(self):
        with pytest.raises(ValueError):
            SmoothGAM("year", family="poisson")

    def test_fit_gamma(self, positive_hauls):
        """Test fitted attributes of a Gamma model."""
        data, y = positive_hauls
        model = SmoothGAM("year + s(depth, k=6) + offset(log(haul_dur))", family="gamma")
        model.fit(data, y)

        assert model.is_fitted_
        n_coef = len(model.coef_)
        assert model.cov_.shape == (n_coef, n_coef)
        assert model.edf_ > 0
        assert np.isfinite(model.loglik_)
        assert model.n_samples_ == len(y)

    def test_offset_enters_linear_predictor(self, positive_hauls):
        """Test that doubling haul duration shifts the linear predictor by log(2)."""
        data, y = positive_hauls
        model = SmoothGAM("year + s(depth, k=6) + offset(log(haul_dur))", family="gamma")
        model.fit(data, y)

        eta = model.linear_predictor(data)
        eta_doubled = model.linear_predictor(data.assign(haul_dur=data['haul_dur'] * 2))

        np.testing.assert_allclose(eta_doubled - eta, np.log(2))
        np.testing.assert_allclose(model.predict(data), np.exp(eta))

    def test_linear_predictor_from_design_matrix(self, positive_hauls):
        data, y = positive_hauls
        model = SmoothGAM("year + s(depth, k=6)", family="normal").fit(data, np.log(y))

        X = model.design_matrix(data)
        np.testing.assert_allclose(model.linear_predictor(data), X.dot(model.coef_))
        np.testing.assert_allclose(model.predict(data, type="link"), model.predict(data))

    def test_binomial_offset_becomes_term(self, survey):
        """Test that binomial offsets are fitted as linear terms."""
        presence = (survey.response(0) > 1).astype(float)
        model = SmoothGAM("year + s(depth, k=6) + offset(log(haul_dur))", family="binomial")
        model.fit(survey.hauls, presence)

        np.testing.assert_array_equal(model.offset(survey.hauls), np.zeros(survey.n_hauls))
        p = model.predict(survey.hauls)
        np.testing.assert_allclose(p, expit(model.linear_predictor(survey.hauls)))
        assert np.all((p > 0) & (p < 1))

    def test_summary(self, positive_hauls):
        data, y = positive_hauls
        model = SmoothGAM("year + s(depth, k=6)", family="gamma").fit(data, y)

        summary = model.summary()
        assert isinstance(summary, ModelSummary)
        assert summary.aic == pytest.approx(2 * model.edf_ - 2 * model.loglik_)
        assert summary.to_dict()['n_obs'] == len(y)
        assert 'Family:    gamma' in repr(summary)

    def test_predict_before_fit(self, survey):
        model = SmoothGAM("year", family="gamma")
        with pytest.raises(RuntimeError):
            model.predict(survey.hauls)

    def test_save_load(self, positive_hauls, tmp_path):
        """Test model serialization round trip."""
        data, y = positive_hauls
        model = SmoothGAM("year + s(depth, k=6)", family="gamma").fit(data, y)

        path = tmp_path / "models" / "positive.pkl"
        model.save(path)
        loaded = SmoothGAM.load(path)

        assert loaded.is_fitted_
        assert loaded.family == "gamma"
        np.testing.assert_array_equal(loaded.coef_, model.coef_)
        np.testing.assert_allclose(loaded.predict(data), model.predict(data))

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SmoothGAM.load(tmp_path / "nope.pkl")

    def test_invalid_lam(self):
        with pytest.raises(ValueError):
            SmoothGAM("year", family="gamma", lam="fast")


def year_effect_data(random_state=3):
    """Hauls over five years with strong year multipliers."""
    rng = np.random.default_rng(random_state)
    years = np.repeat(np.arange(2001, 2006), 40)
    multiplier = np.array([1.0, 8.0, 1.0, 8.0, 1.0])[years - 2001]
    data = pd.DataFrame({'year': pd.Categorical(years)})
    y = rng.gamma(shape=2.0, scale=5.0 * multiplier / 2.0)
    presence = (rng.random(len(years)) < np.array([0.2, 0.5, 0.8, 0.4, 0.6])[years - 2001])
    return data, y, presence.astype(float)


class TestFixedEffects:
    """Tests that fixed effects are estimated without shrinkage."""

    def test_gamma_year_means(self):
        """Test a year-only Gamma model reproduces the observed year means."""
        data, y, _ = year_effect_data()
        model = SmoothGAM("year", family="gamma").fit(data, y)

        years = pd.DataFrame({'year': np.arange(2001, 2006)})
        observed = pd.Series(y).groupby(data['year'].astype(int).values).mean().values
        predicted = model.predict(years)

        np.testing.assert_allclose(predicted, observed, rtol=1e-3)
        np.testing.assert_allclose(predicted[1] / predicted[0], observed[1] / observed[0], rtol=1e-3)

    def test_binomial_year_proportions(self):
        data, _, presence = year_effect_data()
        model = SmoothGAM("year", family="binomial").fit(data, presence)

        years = pd.DataFrame({'year': np.arange(2001, 2006)})
        observed = pd.Series(presence).groupby(data['year'].astype(int).values).mean().values
        np.testing.assert_allclose(model.predict(years), observed, rtol=1e-3)

    def test_fixed_lam(self, positive_hauls):
        data, y = positive_hauls
        model = SmoothGAM("year + s(depth, k=6)", family="gamma", lam=0.6, penalty=2.0)
        model.fit(data, y)

        np.testing.assert_allclose(model.lam_, [0.0, 1.2])


class TestSmoothingSelection:
    """Tests for automatic smoothing weight selection."""

    def test_penalty_inflates_selected_weights(self, positive_hauls):
        """Test the inflation factor multiplies the grid-search choice."""
        data, y = positive_hauls
        light = SmoothGAM("year + s(depth, k=8)", family="gamma", penalty=1.0).fit(data, y)
        heavy = SmoothGAM("year + s(depth, k=8)", family="gamma", penalty=4.0).fit(data, y)

        assert light.lam_[0] == 0.0
        assert light.lam_[1] > 0
        np.testing.assert_allclose(heavy.lam_, 4.0 * light.lam_)
        assert heavy.edf_ <= light.edf_

    def test_selection_depends_on_data(self, survey):
        """Test that a noisy and a smooth response get different weights."""
        rng = np.random.default_rng(0)
        data = survey.hauls
        smooth = np.sin(data['depth'].values / 30.0)
        wiggly = SmoothGAM("s(depth, k=12)", family="normal").fit(
            data, smooth + rng.normal(0, 0.05, len(data))
        )
        flat = SmoothGAM("s(depth, k=12)", family="normal").fit(
            data, rng.normal(0, 1.0, len(data))
        )
        assert wiggly.lam_[0] < flat.lam_[0]

    def test_fixed_only_formula(self, positive_hauls):
        data, y = positive_hauls
        model = SmoothGAM("year", family="gamma").fit(data, y)
        np.testing.assert_array_equal(model.lam_, [0.0])


class TestRandomEffects:
    """Tests for random-effect terms."""

    @pytest.fixture
    def model(self, positive_hauls):
        data, y = positive_hauls
        return SmoothGAM("year + s(ship, bs='re') + s(depth, k=6)", family="gamma").fit(data, y)

    def test_excluded_from_predictions(self, model, positive_hauls):
        """Test predictions without random effects do not depend on the ship."""
        data, _ = positive_hauls
        rows = data.head(5)
        s1 = model.linear_predictor(rows.assign(ship='S1'), include_random=False)
        s2 = model.linear_predictor(rows.assign(ship='S2'), include_random=False)
        unknown = model.linear_predictor(rows.assign(ship='XX'), include_random=False)

        np.testing.assert_allclose(s1, s2)
        np.testing.assert_allclose(s1, unknown)

    def test_design_matrix_columns_zeroed(self, model, positive_hauls):
        data, _ = positive_hauls
        full = model.design_matrix(data).toarray()
        fixed = model.design_matrix(data, include_random=False).toarray()

        columns = model.gam_.terms.get_coef_indices(1)
        np.testing.assert_array_equal(fixed[:, columns], 0)
        other = np.setdiff1d(np.arange(full.shape[1]), columns)
        np.testing.assert_allclose(fixed[:, other], full[:, other])
