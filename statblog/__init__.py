"""
statblog: the methods behind the blog posts.

Each sub-module backs one post or one step of a post: simulating data,
fitting multilevel models by maximum likelihood (numpy / scipy) or by
posterior sampling (PyMC), and turning a fitted model into predictions,
contrasts and hypothesis tests.
"""

from .utils import logistic, logit, make_rng
from . import simulate
from . import pvalues
from . import formula
from . import glmm
from . import marginal

__version__ = "0.1.0"
