import numpy as np
import pytest
from scipy import stats

from trialmeta import metapsy_nnt, nnt_to_g


class TestMetapsyNNT:
    def test_furukawa(self):
        expected = 1 / (stats.norm.cdf(0.5 + stats.norm.ppf(0.2)) - 0.2)
        assert metapsy_nnt(0.5, cer=0.2) == pytest.approx(expected)

    def test_kraemer(self):
        expected = 1 / (2 * stats.norm.cdf(0.5 / np.sqrt(2)) - 1)
        assert metapsy_nnt(0.5, method="kraemer") == pytest.approx(expected)

    def test_negative_effect_gives_negative_nnt(self):
        assert metapsy_nnt(-0.3, cer=0.3) < 0

    def test_vectorized(self):
        out = metapsy_nnt(np.array([0.2, 0.5, 0.8]), cer=0.2)
        assert out.shape == (3,)
        assert (np.diff(out) < 0).all()

    @pytest.mark.parametrize("cer", [0.0, 1.0, -0.1, 1.5])
    def test_cer_out_of_range(self, cer):
        with pytest.raises(ValueError, match="between 0 and 1"):
            metapsy_nnt(0.5, cer=cer)

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="Unknown NNT method"):
            metapsy_nnt(0.5, method="cook")


class TestRoundTrip:
    @pytest.mark.parametrize("g", [-1.5, -0.4, 0.1, 0.9, 1.8])
    @pytest.mark.parametrize("cer", [0.06, 0.3, 0.7, 0.94])
    def test_nnt_to_g_inverts(self, g, cer):
        assert nnt_to_g(metapsy_nnt(g, cer), cer) == pytest.approx(g, abs=1e-8)
