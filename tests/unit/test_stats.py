"""Unit tests for statistical utilities."""

import pytest
import numpy as np

from cellscope.utils.stats import (
    adjust_pvalues,
    compute_percentiles,
    rescale_by_quantiles,
    robust_zscore,
)


class TestComputePercentiles:
    """Tests for compute_percentiles."""

    def test_ignores_nan(self):
        """Test NaN values are dropped before computing percentiles."""
        result = compute_percentiles([1.0, 2.0, np.nan, 3.0], [0, 50, 100])
        np.testing.assert_allclose(result, [1.0, 2.0, 3.0])

    def test_empty(self):
        """Test empty input gives NaNs."""
        result = compute_percentiles([], [5, 95])
        assert result.shape == (2,)
        assert np.isnan(result).all()


class TestRobustZscore:
    """Tests for robust_zscore."""

    def test_values(self):
        """Test z-scores use the scaled MAD."""
        z = robust_zscore([1.0, 2.0, 3.0, 4.0, 100.0])
        # median 3, MAD 1
        assert z[2] == 0.0
        assert z[4] == pytest.approx(97 / 1.4826)

    def test_zero_mad(self):
        """Test constant input gives zeros."""
        np.testing.assert_array_equal(robust_zscore([5.0, 5.0, 5.0]), [0.0, 0.0, 0.0])

    def test_non_finite_kept_as_nan(self):
        """Test non-finite inputs become NaN."""
        z = robust_zscore([1.0, np.nan, 3.0])
        assert np.isnan(z[1])
        assert np.isfinite(z[[0, 2]]).all()


class TestRescaleByQuantiles:
    """Tests for rescale_by_quantiles."""

    def test_range(self):
        """Test output lies in [0, 1]."""
        result = rescale_by_quantiles(np.arange(100, dtype=float))
        assert result.min() == 0.0
        assert result.max() == 1.0

    def test_constant(self):
        """Test constant input gives ones."""
        np.testing.assert_array_equal(rescale_by_quantiles([2.0, 2.0]), [1.0, 1.0])


class TestAdjustPvalues:
    """Tests for adjust_pvalues."""

    P_VALUES = np.array([0.01, 0.04, 0.03, 0.005, 0.5, 0.2])

    def test_bonferroni(self):
        """Test Bonferroni multiplies by the number of tests."""
        result = adjust_pvalues(self.P_VALUES, "bonferroni")
        np.testing.assert_allclose(result, np.minimum(self.P_VALUES * 6, 1.0))

    def test_bonferroni_with_n_tests(self):
        """Test a larger test count is honoured."""
        result = adjust_pvalues(np.array([0.001, 0.01]), "bonferroni", n_tests=50)
        np.testing.assert_allclose(result, [0.05, 0.5])

    @pytest.mark.parametrize("method", ["fdr_bh", "holm"])
    def test_matches_statsmodels(self, method):
        """Test FDR and Holm agree with statsmodels."""
        from statsmodels.stats.multitest import multipletests

        expected = multipletests(self.P_VALUES, method=method)[1]
        np.testing.assert_allclose(adjust_pvalues(self.P_VALUES, method), expected)

    def test_none(self):
        """Test 'none' returns the input values."""
        np.testing.assert_array_equal(adjust_pvalues(self.P_VALUES, "none"), self.P_VALUES)

    def test_empty(self):
        """Test empty input returns an empty array."""
        assert adjust_pvalues(np.array([]), "fdr_bh").size == 0

    def test_unknown_method(self):
        """Test unknown methods raise ValueError."""
        with pytest.raises(ValueError, match="Unknown correction method"):
            adjust_pvalues(self.P_VALUES, "sidak")
