"""
Tests for formula parsing and design construction.
"""

import numpy as np
import pandas as pd
import pytest

from statblog.formula import (INTERCEPT, build_design, parse_formula,
                              random_design_matrix, sd_names)


@pytest.fixture
def small():
    return pd.DataFrame({
        "y": [0, 1, 1, 0, 1, 0],
        "x": [0.0, 1.0, 0.0, 1.0, 1.0, 0.0],
        "z": [1.0, 2.0, 3.0, 4.0, 5.0, 6.0],
        "g": ["a", "a", "b", "b", "c", "c"],
        "h": ["u", "v", "u", "v", "u", "v"],
    })


class TestParse:

    def test_full_formula(self):
        f = parse_formula("y ~ x + (1 + x || g) + (1 | h)")
        assert f.response == "y"
        assert f.intercept
        assert f.fixed == ["x"]
        assert [r.group for r in f.random] == ["g", "h"]
        assert f.random[0].components == [INTERCEPT, "x"]
        assert f.random[1].components == [INTERCEPT]

    def test_implicit_random_intercept(self):
        """(x | g) includes an intercept, as in lme4."""
        f = parse_formula("y ~ x + (x | g)")
        assert f.random[0].components == [INTERCEPT, "x"]

    def test_no_intercept(self):
        f = parse_formula("y ~ 0 + x + (0 + x | g)")
        assert not f.intercept
        assert f.fixed_names == ["x"]
        assert f.random[0].components == ["x"]

    def test_minus_one(self):
        assert not parse_formula("y ~ x - 1 + (1 | g)").intercept

    def test_interaction(self):
        f = parse_formula("y ~ x + z + x:z + (1 | g)")
        assert f.fixed == ["x", "z", "x:z"]
        assert f.variables == ["x", "z", "g"]

    def test_random_only(self):
        f = parse_formula("y ~ (1 | g)")
        assert f.fixed_names == [INTERCEPT]

    @pytest.mark.parametrize("text", [
        "y x + (1 | g)",
        "y ~ x ~ z",
        "~ x",
        "y ~ ",
        "y ~ x + (1 | g",
        "y ~ x + (1 g)",
        "y ~ x + (0 | g)",
        "y ~ x + + z",
        "y ~ log(x)",
    ])
    def test_errors(self, text):
        with pytest.raises(ValueError):
            parse_formula(text)


class TestDesign:

    def test_shapes(self, small):
        d = build_design("y ~ x + (1 + x | g) + (1 | h)", small)
        assert d["X"].shape == (6, 2)
        assert np.array_equal(d["X"][:, 0], np.ones(6))
        assert len(d["blocks"]) == 3
        assert d["levels"] == {"g": ["a", "b", "c"], "h": ["u", "v"]}
        assert np.array_equal(d["y"], small["y"].to_numpy(dtype=float))

    def test_interaction_values(self, small):
        d = build_design("y ~ x:z + (1 | g)", small)
        assert np.array_equal(d["X"][:, 1], (small["x"] * small["z"]).to_numpy())

    def test_random_matrix(self, small):
        d = build_design("y ~ x + (1 + x || g)", small)
        Z, slices = random_design_matrix(d["blocks"], d["levels"])
        assert Z.shape == (6, 6)
        assert slices == [slice(0, 3), slice(3, 6)]
        # intercept block is the group indicator matrix
        assert np.array_equal(Z[:, :3].sum(axis=1), np.ones(6))
        # slope block carries x
        assert np.array_equal(Z[:, 3:].sum(axis=1), small["x"].to_numpy())
        assert sd_names(d["blocks"]) == ["g: (Intercept)", "g: x"]

    def test_unseen_levels(self, small):
        d = build_design("y ~ x + (1 | g)", small)
        new = pd.DataFrame({"x": [1.0, 0.0], "g": ["a", "zzz"]})
        d_new = build_design("y ~ x + (1 | g)", new, levels=d["levels"])
        assert list(d_new["blocks"][0]["index"]) == [0, -1]
        assert d_new["y"] is None
        Z, _ = random_design_matrix(d_new["blocks"], d["levels"])
        assert np.array_equal(Z[1], np.zeros(3))

    def test_missing_column(self, small):
        with pytest.raises(ValueError):
            build_design("y ~ w + (1 | g)", small)
        with pytest.raises(ValueError):
            build_design("y ~ x + (1 | nope)", small)

    def test_non_numeric_slope(self, small):
        with pytest.raises(ValueError):
            build_design("y ~ h + (1 | g)", small)

    def test_fixed_only(self, small):
        """random=False skips the grouping columns entirely."""
        d = build_design("y ~ x + (1 + x | g)", small[["y", "x"]], random=False)
        assert d["X"].shape == (6, 2)
        assert d["blocks"] == []
        assert d["levels"] == {}
