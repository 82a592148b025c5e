"""Shared synthetic datasets and fitted results for the hbpathway tests.

Fits are session-scoped: the estimators are deterministic given the
data and the seed, and the MCMC run is the slowest part of the suite.
"""

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest
from scipy.special import expit

import hbpathway as hb


@pytest.fixture(scope="session")
def pathway_data():
    """2 pathways of 4 exposures (correlation 0.8) plus 2 bridge exposures."""
    return hb.simulate_pathway_data(n=300, group_sizes=(4, 4), n_bridge=2,
                                    rho=0.8, rng_seed=42)


@pytest.fixture(scope="session")
def pathway_spec(pathway_data):
    return hb.ModelSpec(pathway_data["y"], pathway_data["x"], pathway_data["w"],
                        pathway_data["Z"],
                        exposure_names=pathway_data["exposure_names"],
                        group_names=pathway_data["group_names"])


@pytest.fixture(scope="session")
def orthogonal_spec():
    """Exposures exactly orthogonal to each other, to w and to the intercept."""
    rng = np.random.default_rng(11)
    n = 2000
    raw = np.column_stack([np.ones(n), rng.standard_normal((n, 5))])
    Q, _ = np.linalg.qr(raw)
    w = Q[:, 1] * np.sqrt(n)
    x = Q[:, 2:] * np.sqrt(n)
    beta = np.array([0.25, -0.2, 0.15, 0.0])
    y = rng.binomial(1, expit(-0.3 + x @ beta + 0.3 * w)).astype(np.float64)
    return hb.ModelSpec(y, x, w, np.ones((4, 1)))


@pytest.fixture(scope="session")
def univariate_fit(pathway_spec):
    return hb.fit_univariate(pathway_spec)


@pytest.fixture(scope="session")
def joint_fit(pathway_spec):
    return hb.fit_joint(pathway_spec)


@pytest.fixture(scope="session")
def penalized_fit(pathway_spec):
    return hb.fit_penalized(pathway_spec)


@pytest.fixture(scope="session")
def hierarchical_fit(pathway_spec):
    return hb.fit_hierarchical(pathway_spec, num_warmup=500, num_samples=1000,
                               num_chains=2, rng_seed=0)
