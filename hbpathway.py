import os
import warnings
import multiprocessing as mp
from concurrent.futures import ProcessPoolExecutor

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import arviz as az
from scipy.special import expit, logit
from scipy.optimize import minimize
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression
from tqdm.auto import tqdm

import jax
import jax.numpy as jnp
from jax.scipy.stats import norm
import numpyro as npyr
import numpyro.distributions as dist
from numpyro.infer import MCMC, NUTS, init_to_uniform
from numpyro.diagnostics import effective_sample_size, split_gelman_rubin
import blackjax

# Optimizer tolerances and Hessian inversion need double precision.
npyr.enable_x64()

# Ensure tqdm can detect a terminal width in non-TTY environments
# (cloud notebooks, piped output) so progress bars update in-place.
os.environ.setdefault("COLUMNS", "120")

__all__ = [
    "ModelSpec", "prior_precision", "DEFAULT_CALIBRATION",
    "logistic_probs", "log_likelihood",
    "fit_univariate", "fit_joint",
    "pathway_logistic", "log_posterior", "fit_hierarchical",
    "check_convergence", "posterior_summary",
    "penalized_nll", "fit_penalized",
    "EstimationResult", "PosteriorResult",
    "compare_estimators", "comparison_table",
    "simulate_pathway_data", "run_analysis",
    "plot_comparison", "plot_trace",
    "HBPathwayError", "ShapeMismatch", "EstimationFailure",
    "OptimizationFailure", "SamplerFailure",
    "DidNotConverge", "NumericalDegeneracy",
]

# 95% prior probability that the odds ratio lies in (0.5, 2.0); the interval
# spans 4 prior standard deviations on the log scale.
DEFAULT_CALIBRATION = (0.5, 2.0, 4.0)
# Normal(0, variance 1000): the "non-informative" prior on alpha, gamma, pi.
VAGUE_PRIOR_SD = float(np.sqrt(1000.0))
PROB_EPS = 1e-15
RHAT_THRESHOLD = 1.1
NEWTON_DECREMENT_TOL = 1e-10
ESTIMATORS = ("univariate", "joint", "hierarchical", "penalized")


class HBPathwayError(Exception):
    """Base class for errors raised by hbpathway."""


class ShapeMismatch(HBPathwayError, ValueError):
    """Input arrays are malformed or inconsistent with each other."""


class EstimationFailure(HBPathwayError, RuntimeError):
    """An estimator could not produce a result."""


class OptimizationFailure(EstimationFailure):
    """The optimizer could not start or returned a non-finite optimum."""


class SamplerFailure(EstimationFailure):
    """Posterior sampling was numerically unstable or failed its checks."""


class DidNotConverge(UserWarning):
    """Optimizer budget exhausted or sampler diagnostics out of range."""


class NumericalDegeneracy(RuntimeWarning):
    """A near-singular information matrix was regularized before inversion."""


def prior_precision(lower_or=0.5, upper_or=2.0, width=4.0):
    """Prior precision tau implied by a calibrated odds-ratio interval.

    The statement "95% prior probability that the odds ratio lies between
    ``lower_or`` and ``upper_or``" is translated into a log-OR interval
    that spans ``width`` prior standard deviations, so that
    ``tau = ((log(upper_or) - log(lower_or)) / width) ** -2``.

    Parameters
    ----------
    lower_or, upper_or : float
        Bounds of the calibrated odds-ratio interval, ``0 < lower < upper``.
    width : float
        Number of prior standard deviations spanned by the interval.

    Returns
    -------
    float
        Prior precision (inverse variance) of the exposure deviations.
    """
    if not (0 < lower_or < upper_or) or not np.isfinite(upper_or):
        raise ShapeMismatch(
            f"calibration requires 0 < lower_or < upper_or < inf, "
            f"got ({lower_or}, {upper_or})")
    if not width > 0:
        raise ShapeMismatch(f"calibration width must be positive, got {width}")
    return float(((np.log(upper_or) - np.log(lower_or)) / width) ** -2)


def _readonly(a, dtype=np.float64):
    arr = np.array(a, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


class ModelSpec:
    """Observation set, pathway design and prior precision shared by all estimators.

    Parameters
    ----------
    y : array (N,)
        Binary outcome (0/1).
    x : array (N, Nx)
        Continuous exposure measurements.
    w : array (N,)
        Standardized covariate.
    Z : array (Nx, Ng)
        Group (pathway) design matrix; row j holds exposure j's loadings.
        A 1-d array is read as a single group.
    calibration : tuple (lower_or, upper_or, width)
        Calibration statement used to compute ``tau``
        (see :func:`prior_precision`).
    tau : float or None
        Explicit prior precision.  Overrides ``calibration`` when given.
    exposure_names, group_names : sequence of str, optional
        Display names.  Default ``x0..`` and ``g0..``.

    All arrays are stored as read-only float64 copies.
    """

    def __init__(self, y, x, w, Z, calibration=DEFAULT_CALIBRATION, tau=None,
                 exposure_names=None, group_names=None):
        y = np.asarray(y, dtype=np.float64)
        x = np.asarray(x, dtype=np.float64)
        w = np.asarray(w, dtype=np.float64)
        Z = np.asarray(Z, dtype=np.float64)
        if y.ndim != 1:
            raise ShapeMismatch(f"y must be 1-d, got shape {y.shape}")
        if x.ndim != 2:
            raise ShapeMismatch(f"x must be 2-d (N, Nx), got shape {x.shape}")
        if w.ndim == 2 and w.shape[1] == 1:
            w = w[:, 0]
        if w.ndim != 1:
            raise ShapeMismatch(f"w must be 1-d, got shape {w.shape}")
        if Z.ndim == 1:
            Z = Z[:, None]
        if Z.ndim != 2:
            raise ShapeMismatch(f"Z must be 2-d (Nx, Ng), got shape {Z.shape}")
        N, Nx = x.shape
        if N == 0 or Nx == 0 or Z.shape[1] == 0:
            raise ShapeMismatch(
                f"empty inputs: N={N}, Nx={Nx}, Ng={Z.shape[1]}")
        if y.shape[0] != N or w.shape[0] != N:
            raise ShapeMismatch(
                f"row counts disagree: y has {y.shape[0]}, x has {N}, "
                f"w has {w.shape[0]}")
        if Z.shape[0] != Nx:
            raise ShapeMismatch(
                f"Z has {Z.shape[0]} rows but x has {Nx} exposure columns")
        for name, arr in [("y", y), ("x", x), ("w", w), ("Z", Z)]:
            if not np.all(np.isfinite(arr)):
                n_bad = int((~np.isfinite(arr)).sum())
                raise ShapeMismatch(
                    f"{name} contains {n_bad} non-finite values (NaN/Inf). "
                    f"Clean the data before fitting.")
        unique_y = np.unique(y)
        if not np.all((unique_y == 0) | (unique_y == 1)):
            raise ShapeMismatch(
                f"y must be binary (0/1), got unique values: {unique_y}")
        if len(unique_y) < 2:
            raise ShapeMismatch("y must contain both cases and controls")

        if exposure_names is None:
            exposure_names = [f"x{j}" for j in range(Nx)]
        if group_names is None:
            group_names = [f"g{k}" for k in range(Z.shape[1])]
        if len(exposure_names) != Nx:
            raise ShapeMismatch(
                f"{len(exposure_names)} exposure names for {Nx} exposures")
        if len(group_names) != Z.shape[1]:
            raise ShapeMismatch(
                f"{len(group_names)} group names for {Z.shape[1]} groups")

        if tau is None:
            tau = prior_precision(*calibration)
        elif not (np.isfinite(tau) and tau > 0):
            raise ShapeMismatch(f"tau must be positive and finite, got {tau}")

        self._y = _readonly(y)
        self._x = _readonly(x)
        self._w = _readonly(w)
        self._Z = _readonly(Z)
        self._tau = float(tau)
        self._calibration = tuple(calibration)
        self._exposure_names = tuple(str(s) for s in exposure_names)
        self._group_names = tuple(str(s) for s in group_names)

    @property
    def y(self):
        return self._y

    @property
    def x(self):
        return self._x

    @property
    def w(self):
        return self._w

    @property
    def Z(self):
        return self._Z

    @property
    def tau(self):
        return self._tau

    @property
    def calibration(self):
        return self._calibration

    @property
    def N(self):
        return self._x.shape[0]

    @property
    def Nx(self):
        return self._x.shape[1]

    @property
    def Ng(self):
        return self._Z.shape[1]

    @property
    def exposure_names(self):
        return self._exposure_names

    @property
    def group_names(self):
        return self._group_names

    def with_tau(self, tau):
        """Copy of this spec with a different prior precision."""
        return ModelSpec(self._y, self._x, self._w, self._Z,
                         calibration=self._calibration, tau=tau,
                         exposure_names=self._exposure_names,
                         group_names=self._group_names)

    def __repr__(self):
        return (f"ModelSpec(N={self.N}, Nx={self.Nx}, Ng={self.Ng}, "
                f"tau={self.tau:.4g})")


def logistic_probs(alpha, beta, gamma, x, w, eps=PROB_EPS):
    """Fitted probabilities ``logistic(alpha + x @ beta + w * gamma)``.

    Probabilities are clamped to ``[eps, 1 - eps]`` so that the log terms
    of the likelihood stay finite.
    """
    logodds = alpha + jnp.dot(x, beta) + w * gamma
    return jnp.clip(jax.nn.sigmoid(logodds), eps, 1.0 - eps)


def log_likelihood(alpha, beta, gamma, x, w, y, eps=PROB_EPS):
    """Binomial log-likelihood of the logistic model.

    Parameters
    ----------
    alpha : float
        Intercept.
    beta : array (Nx,)
        Exposure effects (log odds ratios), ordered by exposure index.
    gamma : float
        Covariate effect.
    x : array (N, Nx)
    w : array (N,)
    y : array (N,)
    eps : float
        Probability clamp.  Saturated observations contribute about
        ``log(eps)`` instead of ``-inf``.

    Returns
    -------
    scalar
        ``sum_i y_i log p_i + (1 - y_i) log(1 - p_i)``.
    """
    p = logistic_probs(alpha, beta, gamma, x, w, eps=eps)
    return jnp.sum(y * jnp.log(p) + (1.0 - y) * jnp.log1p(-p))


def _split_theta(theta, nx, ng=0):
    alpha = theta[0]
    beta = theta[1:1 + nx]
    gamma = theta[1 + nx]
    pi = theta[2 + nx:2 + nx + ng]
    return alpha, beta, gamma, pi


def _start_theta(y, nx, ng=0):
    theta0 = np.zeros(2 + nx + ng)
    theta0[0] = logit(np.clip(np.mean(y), 0.01, 0.99))
    return theta0


def _invert_information(H, label, ridge=1e-8):
    """Invert an observed information matrix.

    Returns ``(cov, ridged)``.  A near-singular or indefinite matrix is
    retried once with a ridge of ``ridge * max|diag(H)|``; if that still
    fails :class:`EstimationFailure` is raised.
    """
    H = np.asarray(H, dtype=np.float64)
    H = 0.5 * (H + H.T)
    if not np.all(np.isfinite(H)):
        raise EstimationFailure(f"{label}: Hessian contains non-finite values")

    def _valid(cov):
        return np.all(np.isfinite(cov)) and np.all(np.diag(cov) > 0)

    try:
        if np.linalg.cond(H) < 1.0 / np.finfo(np.float64).eps:
            cov = np.linalg.inv(H)
            if _valid(cov):
                return cov, False
    except np.linalg.LinAlgError:
        pass
    scale = max(1.0, float(np.abs(np.diag(H)).max()))
    try:
        cov = np.linalg.inv(H + ridge * scale * np.eye(H.shape[0]))
    except np.linalg.LinAlgError as e:
        raise EstimationFailure(
            f"{label}: information matrix is singular") from e
    if not _valid(cov):
        raise EstimationFailure(
            f"{label}: information matrix is not positive definite")
    return cov, True


def _note(messages, text, category):
    messages.append(text)
    warnings.warn(text, category, stacklevel=3)


_HESS_METHODS = ("trust-exact", "trust-ncg", "trust-krylov", "Newton-CG", "dogleg")
_GTOL_METHODS = ("BFGS", "L-BFGS-B", "CG", "trust-exact", "trust-ncg", "trust-krylov")


def _minimize(objective, theta0, label, method="trust-exact", maxiter=500,
              gtol=1e-8):
    """Minimize a smooth JAX objective with scipy, using exact derivatives.

    Returns the scipy ``OptimizeResult`` and the Hessian at its optimum.
    """
    fun = jax.jit(objective)
    grad = jax.jit(jax.grad(objective))
    hess = jax.jit(jax.hessian(objective))
    theta0 = np.asarray(theta0, dtype=np.float64)
    f0 = float(fun(theta0))
    if not np.isfinite(f0):
        raise OptimizationFailure(
            f"{label}: objective is non-finite at the start point ({f0})")

    options = {"maxiter": maxiter}
    if method in _GTOL_METHODS:
        options["gtol"] = gtol
    kwargs = dict(method=method, jac=lambda t: np.asarray(grad(t)),
                  options=options)
    if method in _HESS_METHODS:
        kwargs["hess"] = lambda t: np.asarray(hess(t))
    try:
        res = minimize(lambda t: float(fun(t)), theta0, **kwargs)
    except (ValueError, np.linalg.LinAlgError) as e:
        raise OptimizationFailure(f"{label}: optimizer failed ({e})") from e
    if not (np.all(np.isfinite(res.x)) and np.isfinite(res.fun)):
        raise OptimizationFailure(f"{label}: optimizer returned non-finite values")
    H = np.asarray(hess(res.x))
    if not res.success and res.status != 1:
        # stalled below the rounding noise of the objective (status 1 is maxiter)
        g = np.asarray(grad(res.x))
        try:
            decrement = float(g @ np.linalg.solve(H, g))
        except np.linalg.LinAlgError:
            decrement = np.inf
        if 0 <= decrement < NEWTON_DECREMENT_TOL * (1.0 + abs(res.fun)):
            res.success = True
            res.message = (f"{res.message} Accepted: Newton decrement "
                           f"{decrement:.2e} at the optimum.")
    return res, H


class EstimationResult:
    """Point estimates and uncertainties of one estimation strategy.

    Attributes
    ----------
    method : str
        Estimator name (``"univariate"``, ``"joint"``, ``"hierarchical"``
        or ``"penalized"``).
    estimate, se : ndarray (Nx,)
        Log odds ratio per exposure and its uncertainty (standard error,
        or posterior sd for the sampler), ordered by exposure index.
    cov : ndarray (Nx, Nx) or None
        Covariance of ``estimate`` where the estimator provides one.
    converged : bool
        False when the optimizer or sampler flagged a convergence problem.
    messages : tuple of str
        Warnings raised while fitting.
    extra : dict
        Estimator-specific quantities (intercept, covariate effect,
        group effects, ...).
    """

    def __init__(self, method, estimate, se, exposure_names, cov=None,
                 converged=True, messages=None, extra=None):
        self.method = method
        self.estimate = _readonly(estimate)
        self.se = _readonly(se)
        self.cov = None if cov is None else _readonly(cov)
        self.exposure_names = tuple(exposure_names)
        self.converged = bool(converged)
        self.messages = tuple(messages or ())
        self.extra = dict(extra or {})

    def _or_interval(self):
        return (np.exp(self.estimate - 1.96 * self.se),
                np.exp(self.estimate + 1.96 * self.se))

    def to_frame(self, odds_ratios=False):
        df = pd.DataFrame({"estimate": self.estimate, "se": self.se},
                          index=pd.Index(self.exposure_names, name="exposure"))
        if odds_ratios:
            lo, hi = self._or_interval()
            df["OR"] = np.exp(self.estimate)
            df["OR_lo"] = lo
            df["OR_hi"] = hi
        return df

    def __repr__(self):
        flag = "" if self.converged else ", converged=False"
        return (f"{type(self).__name__}(method={self.method!r}, "
                f"Nx={len(self.estimate)}{flag})")


class PosteriorResult(EstimationResult):
    """Sampler output: posterior medians/sds plus the draws themselves.

    Draws are stored with shape ``(num_chains, num_draws, ...)`` per site
    so that ``get_samples(group_by_chain=True)`` can feed r_hat and n_eff.
    """

    def __init__(self, samples, exposure_names, num_divergences=0,
                 diagnostics=None, converged=True, messages=None, extra=None):
        self._samples = {k: np.asarray(v) for k, v in samples.items()}
        self.num_chains = self._samples["beta"].shape[0]
        self.num_divergences = int(num_divergences)
        self.diagnostics = diagnostics
        beta = self.get_samples()["beta"]
        super().__init__(
            "hierarchical",
            np.median(beta, axis=0), beta.std(axis=0, ddof=1),
            exposure_names, cov=np.cov(beta, rowvar=False).reshape(
                beta.shape[1], beta.shape[1]),
            converged=converged, messages=messages, extra=extra)

    def get_samples(self, group_by_chain=False):
        if group_by_chain:
            return self._samples
        # Flatten chain dimension: (num_chains * num_draws, ...)
        return {k: v.reshape(-1, *v.shape[2:]) for k, v in self._samples.items()}

    def _or_interval(self):
        odds = self.get_samples()["OR"]
        return (np.percentile(odds, 2.5, axis=0),
                np.percentile(odds, 97.5, axis=0))


def _univariate_worker(args):
    """Fit one exposure plus covariate (module-level for pickling)."""
    j, xj, w, y, tol, max_iter = args
    design = np.column_stack([xj, w])
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        model = LogisticRegression(C=np.inf, solver="lbfgs", tol=tol,
                                   max_iter=max_iter)
        model.fit(design, y)
    converged = True
    for c in caught:
        if issubclass(c.category, ConvergenceWarning):
            converged = False
        else:
            warnings.warn(c.message, c.category)
    theta = np.array([model.intercept_[0], model.coef_[0, 0], model.coef_[0, 1]])

    xj_ = jnp.asarray(xj)[:, None]

    def nll(t):
        return -log_likelihood(t[0], t[1:2], t[2], xj_, w, y)

    H = np.asarray(jax.hessian(nll)(theta))
    cov, ridged = _invert_information(H, f"fit_univariate[{j}]")
    return {"j": j, "theta": theta, "se": float(np.sqrt(cov[1, 1])),
            "converged": converged, "ridged": ridged}


def fit_univariate(spec, tol=1e-8, max_iter=1000, max_workers=1, verbose=False):
    """One logistic regression per exposure, each adjusted for ``w`` only.

    Parameters
    ----------
    spec : ModelSpec
    tol, max_iter : float, int
        Passed to ``sklearn.linear_model.LogisticRegression``.
    max_workers : int
        Number of worker processes.  The fits are independent, so with
        ``max_workers > 1`` they run in a spawn-context process pool.
    verbose : bool
        Print one line per exposure.

    Returns
    -------
    EstimationResult
        ``extra`` holds the per-exposure intercepts and covariate effects.
    """
    args = [(j, spec.x[:, j], spec.w, spec.y, tol, max_iter)
            for j in range(spec.Nx)]
    n_workers = max(1, min(max_workers or 1, spec.Nx, os.cpu_count() or 1))
    if n_workers > 1:
        ctx = mp.get_context("spawn")
        with ProcessPoolExecutor(max_workers=n_workers, mp_context=ctx) as pool:
            fits = list(pool.map(_univariate_worker, args))
    else:
        fits = [_univariate_worker(a) for a in args]
    fits.sort(key=lambda r: r["j"])

    messages = []
    for r in fits:
        name = spec.exposure_names[r["j"]]
        if not r["converged"]:
            _note(messages, f"fit_univariate: lbfgs did not converge for {name}",
                  DidNotConverge)
        if r["ridged"]:
            _note(messages, f"fit_univariate: near-singular information "
                  f"for {name}, ridge added", NumericalDegeneracy)
        if verbose:
            print(f"fit_univariate: {name}: beta={r['theta'][1]:+.3f} "
                  f"se={r['se']:.3f}", flush=True)

    theta = np.array([r["theta"] for r in fits])
    return EstimationResult(
        "univariate", theta[:, 1], [r["se"] for r in fits], spec.exposure_names,
        converged=all(r["converged"] for r in fits), messages=messages,
        extra={"alpha": theta[:, 0], "gamma": theta[:, 2]})


def fit_joint(spec, method="trust-exact", maxiter=500, gtol=1e-8, verbose=False):
    """Maximum-likelihood fit of all exposures plus ``w`` simultaneously.

    The parameter vector is ``[alpha, beta_0..beta_{Nx-1}, gamma]``; the
    covariance is the inverse of the observed information (Hessian of the
    negative log-likelihood) at the optimum.

    Returns
    -------
    EstimationResult
    """
    nx = spec.Nx
    x, w, y = jnp.asarray(spec.x), jnp.asarray(spec.w), jnp.asarray(spec.y)

    def objective(theta):
        alpha, beta, gamma, _ = _split_theta(theta, nx)
        return -log_likelihood(alpha, beta, gamma, x, w, y)

    res, H = _minimize(objective, _start_theta(spec.y, nx), "fit_joint",
                       method=method, maxiter=maxiter, gtol=gtol)
    messages = []
    if not res.success:
        _note(messages, f"fit_joint: optimizer did not converge ({res.message})",
              DidNotConverge)
    cov, ridged = _invert_information(H, "fit_joint")
    if ridged:
        _note(messages, "fit_joint: near-singular information, ridge added",
              NumericalDegeneracy)
    if verbose:
        print(f"fit_joint: -loglik={res.fun:.3f} after {res.nit} iterations",
              flush=True)

    b = slice(1, 1 + nx)
    return EstimationResult(
        "joint", res.x[b], np.sqrt(np.diag(cov)[b]), spec.exposure_names,
        cov=cov[b, b], converged=res.success, messages=messages,
        extra={"alpha": float(res.x[0]), "gamma": float(res.x[1 + nx]),
               "theta": res.x, "cov_theta": cov, "neg_log_lik": float(res.fun),
               "n_iter": int(res.nit)})


def pathway_logistic(x=None, w=None, y=None, Z=None, tau=None,
                     prior_sd=VAGUE_PRIOR_SD):
    """NumPyro model for logistic regression with pathway shrinkage.

    Each exposure effect is its pathway mean plus a deviation,
    ``beta = Z @ pi + delta``, with ``delta_j ~ Normal(0, tau^-1/2)``.
    The intercept ``alpha``, covariate effect ``gamma`` and pathway
    effects ``pi`` receive vague ``Normal(0, prior_sd)`` priors.

    Parameters
    ----------
    x : ndarray (N, Nx)
        Exposures.
    w : ndarray (N,)
        Standardized covariate.
    y : ndarray (N,)
        Binary outcome (0/1).
    Z : ndarray (Nx, Ng)
        Pathway design matrix.
    tau : float
        Prior precision of the deviations ``delta``.
    prior_sd : float
        Standard deviation of the vague priors.
    """
    Nx = x.shape[1]
    Ng = Z.shape[1]
    alpha = npyr.sample("alpha", dist.Normal(0., prior_sd))
    gamma = npyr.sample("gamma", dist.Normal(0., prior_sd))
    with npyr.plate("Ng pathways", Ng):
        pi = npyr.sample("pi", dist.Normal(0., prior_sd))
    with npyr.plate("Nx exposures", Nx):
        delta = npyr.sample("delta", dist.Normal(0., 1. / jnp.sqrt(tau)))
    beta = npyr.deterministic("beta", jnp.dot(Z, pi) + delta)
    npyr.deterministic("OR", jnp.exp(beta))
    npyr.factor("loglik", log_likelihood(alpha, beta, gamma, x, w, y))


def log_posterior(position, spec, prior_sd=VAGUE_PRIOR_SD):
    """Unnormalized log posterior density of :func:`pathway_logistic`.

    Parameters
    ----------
    position : dict
        ``alpha`` and ``gamma`` (scalars), ``pi`` (Ng,), ``delta`` (Nx,).
    spec : ModelSpec
    prior_sd : float
        Standard deviation of the vague priors.
    """
    beta = jnp.dot(spec.Z, position["pi"]) + position["delta"]
    lp = log_likelihood(position["alpha"], beta, position["gamma"],
                        spec.x, spec.w, spec.y)
    lp = lp + norm.logpdf(position["alpha"], 0., prior_sd)
    lp = lp + norm.logpdf(position["gamma"], 0., prior_sd)
    lp = lp + jnp.sum(norm.logpdf(position["pi"], 0., prior_sd))
    lp = lp + jnp.sum(norm.logpdf(position["delta"], 0., 1. / np.sqrt(spec.tau)))
    return lp


def _fit_blackjax(spec, num_warmup, num_samples, num_chains, thinning,
                  target_accept_prob, rng_seed, progress_bar, prior_sd):
    """NUTS via BlackJAX, driven directly by :func:`log_posterior`.

    Each chain gets its own window adaptation from a jittered start and is
    then sampled with a Python-level loop, so a run can be interrupted
    between iterations (partial draws are discarded).

    Returns
    -------
    samples : dict
        Sites shaped ``(num_chains, num_retained, ...)``.
    num_divergences : int
    """
    logdensity_fn = lambda position: log_posterior(position, spec, prior_sd)
    rng_key = jax.random.PRNGKey(rng_seed)
    alpha0 = float(logit(np.clip(spec.y.mean(), 0.01, 0.99)))
    chain_draws = []
    n_div = 0
    for c in range(num_chains):
        init_key, warm_key, run_key = jax.random.split(
            jax.random.fold_in(rng_key, c), 3)
        k = jax.random.split(init_key, 4)
        position = {
            "alpha": alpha0 + 0.1 * jax.random.normal(k[0]),
            "gamma": 0.1 * jax.random.normal(k[1]),
            "pi": 0.1 * jax.random.normal(k[2], (spec.Ng,)),
            "delta": 0.1 * jax.random.normal(k[3], (spec.Nx,)),
        }
        warmup = blackjax.window_adaptation(
            blackjax.nuts, logdensity_fn,
            target_acceptance_rate=target_accept_prob)
        (state, parameters), _ = warmup.run(warm_key, position,
                                            num_steps=num_warmup)
        step_fn = jax.jit(blackjax.nuts(logdensity_fn, **parameters).step)

        draws = []
        with tqdm(range(num_samples), desc=f"NUTS chain {c + 1}/{num_chains}",
                  ncols=100, disable=not progress_bar) as pbar:
            for i in pbar:
                state, info = step_fn(jax.random.fold_in(run_key, i), state)
                ld = float(state.logdensity)
                if not np.isfinite(ld):
                    raise SamplerFailure(
                        f"fit_hierarchical: non-finite log density at step {i} "
                        f"(chain {c + 1})")
                n_div += int(info.is_divergent)
                if (i + 1) % thinning == 0:
                    draws.append(state.position)
        chain_draws.append(jax.tree.map(lambda *arrs: jnp.stack(arrs), *draws))

    samples = jax.tree.map(lambda *arrs: jnp.stack(arrs), *chain_draws)
    samples["beta"] = jnp.dot(samples["pi"], spec.Z.T) + samples["delta"]
    samples["OR"] = jnp.exp(samples["beta"])
    return samples, n_div


def _site_diagnostics(chain_samples, sites=("alpha", "gamma", "pi", "delta", "beta")):
    rows = []
    for site in sites:
        arr = np.asarray(chain_samples[site])   # (chains, draws, ...)
        n_eff = np.atleast_1d(effective_sample_size(arr))
        r_hat = np.atleast_1d(split_gelman_rubin(arr))
        for k in range(n_eff.size):
            name = site if arr.ndim == 2 else f"{site}[{k}]"
            rows.append({"parameter": name, "n_eff": float(n_eff[k]),
                         "r_hat": float(r_hat[k])})
    return pd.DataFrame(rows)


def check_convergence(result, rhat_threshold=RHAT_THRESHOLD):
    """Multi-chain convergence diagnostics for a :class:`PosteriorResult`.

    Computes split r_hat and effective sample size for every tracked site.
    The run is flagged when any r_hat is non-finite or at least
    ``rhat_threshold``, or when the sampler reported divergent transitions.
    Whether a flagged run is an error is left to the caller.

    Returns
    -------
    ok : bool
    diagnostics : DataFrame
        Columns ``parameter``, ``n_eff``, ``r_hat``.
    """
    diagnostics = _site_diagnostics(result.get_samples(group_by_chain=True))
    r_hat = diagnostics["r_hat"].to_numpy()
    ok = bool(np.all(np.isfinite(r_hat)) and np.all(r_hat < rhat_threshold)
              and result.num_divergences == 0)
    return ok, diagnostics


def fit_hierarchical(spec, num_warmup=1000, num_samples=1000, num_chains=4,
                     thinning=1, sampler="nuts", target_accept_prob=0.9,
                     max_tree_depth=10, rng_seed=0, prior_sd=VAGUE_PRIOR_SD,
                     rhat_threshold=RHAT_THRESHOLD, strict=False,
                     progress_bar=False, verbose=False):
    """Posterior sampling of the two-stage pathway model.

    Parameters
    ----------
    spec : ModelSpec
    num_warmup : int
        Warmup (adaptation) iterations per chain.
    num_samples : int
        Post-warmup iterations per chain.
    num_chains : int
        Number of chains, run sequentially.
    thinning : int
        Keep every *thinning*-th draw; ``num_samples // thinning`` must be
        at least 4. Divergences are counted over all iterations.
    sampler : {"nuts", "blackjax"}
        ``"nuts"`` runs NumPyro NUTS on :func:`pathway_logistic`;
        ``"blackjax"`` runs BlackJAX NUTS on :func:`log_posterior`.
    target_accept_prob : float
        NUTS target acceptance probability.
    max_tree_depth : int
        NumPyro NUTS maximum tree depth.
    rng_seed : int
        Random seed.
    prior_sd : float
        Standard deviation of the vague priors on alpha, gamma and pi.
    rhat_threshold : float
        Passed to :func:`check_convergence`.
    strict : bool
        If True a run flagged by :func:`check_convergence` raises
        :class:`SamplerFailure`; otherwise a :class:`DidNotConverge`
        warning is issued and ``result.converged`` is False.
    progress_bar : bool
        Show sampler progress bars.
    verbose : bool
        Print the per-exposure summary table.

    Returns
    -------
    PosteriorResult
        Posterior median (estimate) and sd (uncertainty) of beta per
        exposure.  ``extra`` holds posterior medians of alpha, gamma, pi.
    """
    if thinning < 1:
        raise ValueError(f"thinning must be >= 1, got {thinning}")
    if num_chains < 1:
        raise ValueError(f"num_chains must be >= 1, got {num_chains}")
    if num_samples // thinning < 4:
        raise ValueError(
            f"num_samples={num_samples} with thinning={thinning} keeps "
            f"{num_samples // thinning} draws per chain; at least 4 are needed "
            f"for split r_hat")
    if sampler == "nuts":
        kernel = NUTS(pathway_logistic, target_accept_prob=target_accept_prob,
                      max_tree_depth=max_tree_depth,
                      init_strategy=init_to_uniform(radius=0.5))
        # thinned afterwards so divergences are counted on every iteration
        mcmc = MCMC(kernel, num_warmup=num_warmup, num_samples=num_samples,
                    num_chains=num_chains, chain_method="sequential",
                    progress_bar=progress_bar)
        try:
            mcmc.run(jax.random.PRNGKey(rng_seed), x=spec.x, w=spec.w, y=spec.y,
                     Z=spec.Z, tau=spec.tau, prior_sd=prior_sd,
                     extra_fields=("diverging",))
        except (FloatingPointError, RuntimeError, ValueError) as e:
            raise SamplerFailure(f"fit_hierarchical: NUTS failed ({e})") from e
        samples = {k: v[:, thinning - 1::thinning]
                   for k, v in mcmc.get_samples(group_by_chain=True).items()}
        n_div = int(np.sum(mcmc.get_extra_fields(group_by_chain=True)["diverging"]))
    elif sampler == "blackjax":
        samples, n_div = _fit_blackjax(spec, num_warmup, num_samples, num_chains,
                                       thinning, target_accept_prob, rng_seed,
                                       progress_bar, prior_sd)
    else:
        raise ValueError(f"Unknown sampler: {sampler!r}. Use 'nuts' or 'blackjax'.")

    samples = {k: np.asarray(samples[k])
               for k in ("alpha", "gamma", "pi", "delta", "beta", "OR")}
    for name, arr in samples.items():
        if not np.all(np.isfinite(arr)):
            raise SamplerFailure(
                f"fit_hierarchical: {int((~np.isfinite(arr)).sum())} "
                f"non-finite draws of {name}")

    flat = {k: v.reshape(-1, *v.shape[2:]) for k, v in samples.items()}
    result = PosteriorResult(
        samples, spec.exposure_names, num_divergences=n_div,
        extra={"alpha": float(np.median(flat["alpha"])),
               "gamma": float(np.median(flat["gamma"])),
               "pi": np.median(flat["pi"], axis=0),
               "pi_sd": flat["pi"].std(axis=0, ddof=1),
               "tau": spec.tau, "sampler": sampler})
    ok, diagnostics = check_convergence(result, rhat_threshold=rhat_threshold)
    result.diagnostics = diagnostics
    if not ok:
        worst = diagnostics.loc[diagnostics["r_hat"].fillna(np.inf).idxmax()]
        text = (f"fit_hierarchical: chains flagged as unstable "
                f"(max r_hat={worst['r_hat']:.3f} for {worst['parameter']}, "
                f"{n_div} divergences)")
        if strict:
            raise SamplerFailure(text)
        messages = []
        _note(messages, text, DidNotConverge)
        result.converged = False
        result.messages = tuple(messages)
    if verbose:
        print(f"fit_hierarchical: {num_chains} chains x "
              f"{flat['beta'].shape[0] // num_chains} draws, "
              f"{n_div} divergences", flush=True)
        print(result.to_frame().to_string(float_format="%.3f"), flush=True)
    return result


def posterior_summary(result, filepath=None, verbose=False):
    """Posterior summary table of exposure and pathway effects.

    Parameters
    ----------
    result : PosteriorResult
        Output of :func:`fit_hierarchical`.
    filepath : str, optional
        If given, the table is written there as CSV.
    verbose : bool
        Print the table.

    Returns
    -------
    DataFrame
        One row per ``beta`` (named by exposure) and per ``pi[k]``, with
        mean, sd, median, 2.5%/97.5% quantiles, odds-ratio median and
        interval, n_eff and r_hat.
    """
    chain_samples = result.get_samples(group_by_chain=True)

    def _row(name, x_chain):
        x_flat = x_chain.reshape(-1)
        odds = np.exp(x_flat)
        return {
            "parameter": name,
            "mean": float(np.mean(x_flat)),
            "sd": float(np.std(x_flat, ddof=1)),
            "median": float(np.median(x_flat)),
            "q0.025": float(np.percentile(x_flat, 2.5)),
            "q0.975": float(np.percentile(x_flat, 97.5)),
            "OR": float(np.median(odds)),
            "OR_q0.025": float(np.percentile(odds, 2.5)),
            "OR_q0.975": float(np.percentile(odds, 97.5)),
            "n_eff": float(effective_sample_size(x_chain)),
            "r_hat": float(split_gelman_rubin(x_chain)),
        }

    beta = chain_samples["beta"]
    rows = [_row(name, beta[..., j]) for j, name in enumerate(result.exposure_names)]
    pi = chain_samples["pi"]
    rows += [_row(f"pi[{k}]", pi[..., k]) for k in range(pi.shape[-1])]
    df = pd.DataFrame(rows)
    if filepath is not None:
        df.to_csv(filepath, index=False, float_format="%.4f")
        print(f"Summary saved to {filepath}")
    if verbose:
        print(df.to_string(index=False))
    return df


def penalized_nll(theta, spec):
    """Penalized negative log-likelihood.

    ``theta = [alpha, beta_0..beta_{Nx-1}, gamma, pi_0..pi_{Ng-1}]`` and

        NPLL = -loglik(alpha, beta, gamma) + tau/2 * |beta - Z @ pi|^2

    which is minus the log posterior of :func:`pathway_logistic` with
    ``delta = beta - Z @ pi``, up to the vague priors and a constant.
    """
    alpha, beta, gamma, pi = _split_theta(theta, spec.Nx, spec.Ng)
    resid = beta - jnp.dot(spec.Z, pi)
    return (-log_likelihood(alpha, beta, gamma, spec.x, spec.w, spec.y)
            + 0.5 * spec.tau * jnp.dot(resid, resid))


def fit_penalized(spec, method="trust-exact", maxiter=500, gtol=1e-8,
                  verbose=False):
    """Minimize :func:`penalized_nll` over ``(alpha, beta, gamma, pi)``.

    The covariance is the inverse Hessian of the objective at the
    minimizer; standard errors of ``beta`` are the square roots of its
    diagonal.  Uses ``spec.tau``, the same precision as
    :func:`fit_hierarchical`.

    Returns
    -------
    EstimationResult
        ``extra`` holds alpha, gamma, pi, pi_se and ``delta = beta - Z @ pi``.
    """
    nx, ng = spec.Nx, spec.Ng
    res, H = _minimize(lambda t: penalized_nll(t, spec),
                       _start_theta(spec.y, nx, ng), "fit_penalized",
                       method=method, maxiter=maxiter, gtol=gtol)
    messages = []
    if not res.success:
        _note(messages, f"fit_penalized: optimizer did not converge "
              f"({res.message})", DidNotConverge)
    cov, ridged = _invert_information(H, "fit_penalized")
    if ridged:
        _note(messages, "fit_penalized: near-singular Hessian, ridge added",
              NumericalDegeneracy)

    alpha, beta, gamma, pi = _split_theta(res.x, nx, ng)
    se = np.sqrt(np.diag(cov))
    if verbose:
        print(f"fit_penalized: tau={spec.tau:.4g}, NPLL={res.fun:.3f} "
              f"after {res.nit} iterations", flush=True)
    b = slice(1, 1 + nx)
    return EstimationResult(
        "penalized", beta, se[b], spec.exposure_names, cov=cov[b, b],
        converged=res.success, messages=messages,
        extra={"alpha": float(alpha), "gamma": float(gamma), "pi": pi,
               "pi_se": se[2 + nx:], "delta": beta - spec.Z @ pi,
               "tau": spec.tau, "theta": res.x, "cov_theta": cov,
               "npll": float(res.fun), "n_iter": int(res.nit)})


def compare_estimators(spec, estimators=ESTIMATORS, univariate_kwargs=None,
                       joint_kwargs=None, hierarchical_kwargs=None,
                       penalized_kwargs=None, verbose=True):
    """Run the estimation strategies one after another on the same spec.

    A failure of one estimator (:class:`EstimationFailure`) is reported and
    recorded without stopping the others.

    Parameters
    ----------
    spec : ModelSpec
    estimators : sequence of str
        Subset of ``("univariate", "joint", "hierarchical", "penalized")``.
    univariate_kwargs, joint_kwargs, hierarchical_kwargs, penalized_kwargs : dict
        Keyword arguments for the corresponding ``fit_*`` function.
    verbose : bool

    Returns
    -------
    dict
        Estimator name to :class:`EstimationResult`, or to the exception
        raised by that estimator.
    """
    fitters = {
        "univariate": (fit_univariate, univariate_kwargs),
        "joint": (fit_joint, joint_kwargs),
        "hierarchical": (fit_hierarchical, hierarchical_kwargs),
        "penalized": (fit_penalized, penalized_kwargs),
    }
    unknown = [name for name in estimators if name not in fitters]
    if unknown:
        raise ValueError(f"Unknown estimators: {unknown}. Use {list(fitters)}.")

    results = {}
    for name in estimators:
        fitter, kwargs = fitters[name]
        kwargs = dict(kwargs or {})
        kwargs.setdefault("verbose", verbose)
        if verbose:
            print(f"\n--- {name} ---", flush=True)
        try:
            results[name] = fitter(spec, **kwargs)
        except EstimationFailure as e:
            print(f"compare_estimators: {name} failed: {e}", flush=True)
            results[name] = e
    return results


def comparison_table(results, decimals=3, odds_ratios=False):
    """Side-by-side table of estimates and uncertainties.

    Parameters
    ----------
    results : dict
        Output of :func:`compare_estimators`.  Failed estimators give
        columns of NaN; their error messages are kept in
        ``table.attrs["errors"]``.
    decimals : int or None
        Rounding applied to the table.
    odds_ratios : bool
        Add OR and 95% interval columns for each estimator.

    Returns
    -------
    DataFrame
        Indexed by exposure, columns ``(estimator, quantity)``.
    """
    names = None
    for r in results.values():
        if isinstance(r, EstimationResult):
            names = r.exposure_names
            break
    if names is None:
        raise EstimationFailure("comparison_table: every estimator failed")

    frames, errors = {}, {}
    for method, r in results.items():
        if isinstance(r, EstimationResult):
            frames[method] = r.to_frame(odds_ratios=odds_ratios)
        else:
            errors[method] = str(r)
            cols = ["estimate", "se"] + (["OR", "OR_lo", "OR_hi"] if odds_ratios else [])
            frames[method] = pd.DataFrame(
                np.nan, index=pd.Index(names, name="exposure"), columns=cols)
    table = pd.concat(frames, axis=1, names=["estimator", "quantity"])
    if decimals is not None:
        table = table.round(decimals)
    table.attrs["errors"] = errors
    return table


def simulate_pathway_data(n=300, group_sizes=(4, 4), n_bridge=2, rho=0.8,
                          beta=None, pi=None, delta_sd=0.15, alpha=-0.5,
                          gamma=0.5, rng_seed=0):
    """Simulate correlated exposures grouped into pathways.

    Exposures in group k load on a latent factor f_k so that exposures in
    the same group have correlation ``rho``.  Each bridge exposure loads
    equally on f_0 and f_1 and has a Z row of 0.5 on both groups.  True
    effects are ``beta = Z @ pi + delta`` with ``delta ~ N(0, delta_sd)``,
    unless ``beta`` is given; ``pi_true`` is then its least-squares
    projection onto the columns of Z.

    Returns
    -------
    dict
        ``y, x, w, Z, beta_true, pi_true, exposure_names, group_names``.
    """
    n_groups = len(group_sizes)
    if n_bridge and n_groups < 2:
        raise ValueError("bridge exposures need at least two groups")
    if not 0 <= rho < 1:
        raise ValueError(f"rho must be in [0, 1), got {rho}")
    rng = np.random.default_rng(rng_seed)
    factors = rng.standard_normal((n, n_groups))

    columns, Z_rows, names = [], [], []
    for k, size in enumerate(group_sizes):
        for i in range(size):
            columns.append(np.sqrt(rho) * factors[:, k]
                           + np.sqrt(1 - rho) * rng.standard_normal(n))
            row = np.zeros(n_groups)
            row[k] = 1.0
            Z_rows.append(row)
            names.append(f"g{k}_x{i}")
    for b in range(n_bridge):
        columns.append(np.sqrt(rho / 2) * (factors[:, 0] + factors[:, 1])
                       + np.sqrt(1 - rho) * rng.standard_normal(n))
        row = np.zeros(n_groups)
        row[:2] = 0.5
        Z_rows.append(row)
        names.append(f"bridge{b}")
    x = np.column_stack(columns)
    Z = np.vstack(Z_rows)

    w = rng.standard_normal(n) + 0.3 * factors[:, 0]
    w = (w - w.mean()) / w.std()
    if beta is not None:
        beta = np.asarray(beta, dtype=np.float64)
        if beta.shape != (Z.shape[0],):
            raise ValueError(f"beta must have shape ({Z.shape[0]},), got {beta.shape}")
        pi = np.linalg.lstsq(Z, beta, rcond=None)[0]
    else:
        if pi is None:
            pi = np.linspace(0.5, -0.25, n_groups)
        pi = np.asarray(pi, dtype=np.float64)
        beta = Z @ pi + delta_sd * rng.standard_normal(Z.shape[0])
    y = rng.binomial(1, expit(alpha + x @ beta + gamma * w)).astype(np.float64)
    return {"y": y, "x": x, "w": w, "Z": Z, "beta_true": beta, "pi_true": pi,
            "exposure_names": names,
            "group_names": [f"g{k}" for k in range(n_groups)]}


def plot_comparison(results, filestem):
    """Forest plot of log odds ratios +/- 1.96 uncertainty per estimator.

    Saves the figure to ``{filestem}_comparison.pdf``.

    Returns
    -------
    str
        Path to the saved plot.
    """
    fitted = {m: r for m, r in results.items() if isinstance(r, EstimationResult)}
    if not fitted:
        raise EstimationFailure("plot_comparison: every estimator failed")
    names = next(iter(fitted.values())).exposure_names
    n_show = len(names)
    offsets = np.linspace(-0.3, 0.3, len(fitted)) if len(fitted) > 1 else [0.0]

    fig, ax = plt.subplots(figsize=(6, max(2, 0.45 * n_show)))
    y_pos = np.arange(n_show)
    ax.axvline(0, color="grey", linewidth=0.8, linestyle="--")
    for off, (method, r) in zip(offsets, fitted.items()):
        ax.errorbar(r.estimate, y_pos + off, xerr=1.96 * r.se, fmt="o",
                    elinewidth=1.2, capsize=2, markersize=3, label=method)
    ax.set_yticks(y_pos)
    ax.set_yticklabels(names, fontsize=8)
    ax.set_ylim(-0.5, n_show - 0.5)
    ax.invert_yaxis()
    ax.set_xlabel("Log odds ratio")
    ax.legend(fontsize=7)
    fig.tight_layout()
    outpath = filestem + "_comparison.pdf"
    fig.savefig(outpath)
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def plot_trace(result, filestem):
    """Trace plot of the exposure effects, one colour per chain.

    Saves the figure to ``{filestem}_trace.pdf``.
    """
    beta_ch = result.get_samples(group_by_chain=True)["beta"]
    data = {name: beta_ch[..., j] for j, name in enumerate(result.exposure_names)}
    idata = az.from_dict(posterior=data)
    axes = az.plot_trace(idata, figsize=(10, 1.5 * len(data)))
    fig = axes.ravel()[0].get_figure()
    fig.tight_layout()
    outpath = filestem + "_trace.pdf"
    fig.savefig(outpath)
    plt.close(fig)
    print(f"Plot saved to {outpath}")
    return outpath


def run_analysis(df, y_col, exposure_cols, covariate_col, Z, filestem=None,
                 calibration=DEFAULT_CALIBRATION, tau=None, group_names=None,
                 estimators=ESTIMATORS, standardize=True, sampler="nuts",
                 num_warmup=1000, num_samples=1000, num_chains=4, thinning=1,
                 rng_seed=0, max_workers=1, verbose=True):
    """High-level entry point: compare the four estimators from a DataFrame.

    Parameters
    ----------
    df : DataFrame
        Data containing outcome, exposures and covariate.
    y_col : str
        Name of the binary outcome column.
    exposure_cols : list of str
        Exposure columns, in the order used for Z rows.
    covariate_col : str
        Column of the single adjustment covariate.
    Z : array (Nx, Ng) or DataFrame
        Pathway design.  A DataFrame is aligned on ``exposure_cols`` by
        its index and its columns name the groups.
    filestem : str or None
        If given, prefix for the comparison CSV, posterior summary CSV
        and PDF plots.
    calibration, tau
        See :class:`ModelSpec`.
    group_names : list of str, optional
        Group names when Z is an array.
    estimators : sequence of str
        Estimators to run (see :func:`compare_estimators`).
    standardize : bool
        Centre and scale the covariate to zero mean and unit variance.
    sampler, num_warmup, num_samples, num_chains, thinning, rng_seed
        Passed to :func:`fit_hierarchical`.
    max_workers : int
        Passed to :func:`fit_univariate`.
    verbose : bool

    Returns
    -------
    dict
        ``spec``, ``results``, ``table`` and ``summary`` (posterior
        summary or None).
    """
    used_cols = [y_col] + list(exposure_cols) + [covariate_col]
    N_before = len(df)
    df = df[used_cols].dropna()
    N_after = len(df)
    if verbose and N_after < N_before:
        print(f"Dropped {N_before - N_after} rows with missing values "
              f"({N_before} -> {N_after})")

    if isinstance(Z, pd.DataFrame):
        missing = [c for c in exposure_cols if c not in Z.index]
        if missing:
            raise ShapeMismatch(f"Z has no rows for exposures {missing}")
        group_names = list(Z.columns)
        Z = Z.loc[list(exposure_cols)].to_numpy(dtype=np.float64)

    w = df[covariate_col].to_numpy(dtype=np.float64)
    if standardize:
        sd = w.std()
        w = (w - w.mean()) / (sd if sd > 0 else 1.0)
        if verbose:
            print(f"Covariate {covariate_col} standardized to zero mean, unit variance")

    spec = ModelSpec(df[y_col].to_numpy(dtype=np.float64),
                     df[list(exposure_cols)].to_numpy(dtype=np.float64),
                     w, Z, calibration=calibration, tau=tau,
                     exposure_names=list(exposure_cols), group_names=group_names)
    n_cases = int(spec.y.sum())
    if verbose:
        print(f"N={spec.N} ({n_cases} cases, {spec.N - n_cases} controls), "
              f"Nx={spec.Nx}, Ng={spec.Ng}, tau={spec.tau:.4f}")

    results = compare_estimators(
        spec, estimators=estimators,
        univariate_kwargs={"max_workers": max_workers},
        hierarchical_kwargs={"sampler": sampler, "num_warmup": num_warmup,
                             "num_samples": num_samples, "num_chains": num_chains,
                             "thinning": thinning, "rng_seed": rng_seed},
        verbose=verbose)

    table = comparison_table(results)
    if verbose:
        print("\nComparison of estimators (log odds ratios):")
        print(table.to_string())

    hier = results.get("hierarchical")
    summary = None
    if isinstance(hier, PosteriorResult):
        summary = posterior_summary(
            hier, None if filestem is None else filestem + "_posterior.csv")
    if filestem is not None:
        outpath = filestem + "_comparison.csv"
        table.to_csv(outpath)
        print(f"Comparison saved to {outpath}")
        plot_comparison(results, filestem)
        if isinstance(hier, PosteriorResult):
            plot_trace(hier, filestem)

    return {"spec": spec, "results": results, "table": table,
            "summary": summary}
