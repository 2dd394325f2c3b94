import pytest

from statblog.glmm import fit_glmm
from statblog.simulate import simulate_advice_data

FORMULA = ("binary_outcome ~ advice_present"
           " + (1 + advice_present || subject) + (1 | item)")


@pytest.fixture(scope="session")
def advice_data():
    return simulate_advice_data(n_subjects=40, n_items=25, seed=7)


@pytest.fixture(scope="session")
def glmm_fit(advice_data):
    return fit_glmm(FORMULA, advice_data, family="binomial")
