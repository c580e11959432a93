#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Simulation-based power analysis for temporal and treatment effects on species occupancy
(repeated-visit acoustic / point-count monitoring data).

--------------------------------------------------------------------
WHAT IT DOES
--------------------------------------------------------------------
A) Detection histories from raw records
   - Every distinct (site, recording time) is a visit; visits on the same date at the same
     site are the within-occasion surveys of one (site, date) unit.
   - The target species is joined onto the full visit set so that visits without the species
     score 0 instead of disappearing.
   - Sites carry a treatment label (by default the last two characters of the location code)
     and a clock anchored on their first recorded survey (any species).

B) Occupancy model (maximum likelihood)
   - Constant detection: logit(p) = alpha.
   - Occupancy: logit(psi) = b0 + b_time * years_scaled + treatment offsets (reference level first).
   - Wald z-tests per coefficient, plus a joint Wald chi-square across treatment offsets.

C) Monte Carlo power
   - Synthetic rosters of treatments x time points x sites, latent occupancy z ~ Bernoulli(psi),
     detections y ~ Bernoulli(z * p).
   - Each replicate is refit; power is the share of converged replicates with p < alpha.
   - "Treatment power" counts a replicate when ANY non-reference level is significant;
     per-level and omnibus power are reported alongside.

--------------------------------------------------------------------
ASSUMPTIONS & SCOPE
--------------------------------------------------------------------
- Time enters the model standardized. Simulations must reuse the real-data (center, scale),
  otherwise beta_time means something different in the fit and in the simulation.
- Replicates that fail to converge are excluded from the power denominator and counted.
- False positives are not modeled.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import math
import os
import re
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import optimize, stats
from scipy.special import expit
from statsmodels.tools.numdiff import approx_fprime

logger = logging.getLogger(__name__)


# ----------------------------
# CONFIGURABLE CONSTANTS
# ----------------------------

DAYS_PER_YEAR: float = 365.25
DEFAULT_ALPHA: float = 0.05
DEFAULT_N_SIMS: int = 200
DEFAULT_SITES_PER_TREATMENT: int = 30
DEFAULT_N_SURVEYS: int = 4
DEFAULT_TIME_POINTS: Tuple[float, ...] = (0.0, 1.0, 2.0, 3.0, 4.0)

DEFAULT_FIT_TIMEOUT: float = 30.0   # optimizer wall time per fit, seconds
DEFAULT_MAX_ITER: int = 500
GRADIENT_TOL: float = 1e-3          # max |score| accepted when BFGS reports precision loss
HESSIAN_STEP: float = 1e-5
DEFAULT_CHUNK_SIZE: int = 16

# Column names of the monitoring export.
LOCATION_COL: str = "location"
DATETIME_COL: str = "recording_date_time"
SPECIES_COL: str = "species_code"

# Coefficient labels (occupancy sub-model "psi", detection sub-model "p").
INTERCEPT_TERM: str = "psi(Int)"
TIME_TERM: str = "psi(years_scaled)"
DETECTION_TERM: str = "p(Int)"


def treatment_term(level: str) -> str:
    return f"psi(treatment{level})"


# ----------------------------
# ERRORS
# ----------------------------

class OccupancyPowerError(Exception):
    """Base class for errors raised by this module."""


class DataIntegrityError(OccupancyPowerError):
    """Raw detection records are malformed or incomplete; nothing downstream can be built."""


class ModelConvergenceError(OccupancyPowerError):
    """The occupancy likelihood could not be maximised (or the optimum is degenerate)."""


class _FitTimeout(Exception):
    pass


# ----------------------------
# UTILS
# ----------------------------

def inv_logit(x):
    """Numerically stable logistic transform for scalars and arrays."""
    return expit(x)


def logit(p):
    """Log-odds, with p clipped safely away from 0/1."""
    p = np.clip(p, 1e-12, 1.0 - 1e-12)
    return np.log(p) - np.log1p(-p)


def last_two_chars(site_id: str) -> str:
    """Default treatment rule: trailing two characters of the location code ('N12-03CC' -> 'CC')."""
    s = str(site_id).strip()
    if len(s) < 2:
        raise DataIntegrityError(f"Location '{site_id}' is too short to carry a treatment code.")
    return s[-2:]


def parse_keyvals(spec: Optional[str],
                  allowed_keys: Optional[Tuple[str, ...]] = None,
                  lower_keys: bool = True) -> Dict[str, float]:
    """Parse comma/semicolon-separated `key=value` pairs into a float dict.

    Example: "time=0.5,CC=0,OG=0.4,UP=-0.3,p=0.35".
    Unknown keys are rejected if `allowed_keys` is provided.
    """
    if not spec:
        return {}
    parts = re.split(r"[;,]\s*", spec.strip())
    out: Dict[str, float] = {}
    for part in parts:
        if not part:
            continue
        if "=" not in part:
            raise ValueError(f"Expected 'key=value' pairs, got '{part}'.")
        k, v = part.split("=", 1)
        key = k.strip().lower() if lower_keys else k.strip()
        if allowed_keys and key not in allowed_keys:
            raise ValueError(f"Unknown key '{key}'. Allowed: {allowed_keys}")
        try:
            val = float(v.strip())
        except ValueError:
            raise ValueError(f"Value for '{key}' must be numeric, got '{v}'.")
        out[key] = val
    return out


def parse_float_list(spec: Optional[str]) -> List[float]:
    """Parse "0,1,2.5" (commas, semicolons or spaces) into floats."""
    if not spec:
        return []
    out = []
    for item in re.split(r"[;,\s]+", spec.strip()):
        if not item:
            continue
        try:
            out.append(float(item))
        except ValueError:
            raise ValueError(f"Expected a number, got '{item}'.")
    return out


def parse_int_list(spec: Optional[str]) -> List[int]:
    values = parse_float_list(spec)
    if any(v != int(v) for v in values):
        raise ValueError(f"Expected whole numbers, got '{spec}'.")
    return [int(v) for v in values]


def parse_labels(spec: Optional[str]) -> List[str]:
    if not spec:
        return []
    return [s for s in (x.strip() for x in re.split(r"[;,]", spec)) if s]


# ----------------------------
# DATA CLASSES
# ----------------------------

@dataclass(frozen=True)
class Scaling:
    """Center/scale used to standardize years-since-first-survey.

    Reuse the real-data instance in simulations so that beta_time keeps its meaning.
    """
    center: float
    scale: float

    def __post_init__(self):
        if not (math.isfinite(self.center) and math.isfinite(self.scale)):
            raise ValueError("Scaling center and scale must be finite.")
        if self.scale <= 0:
            raise ValueError(f"Scaling scale must be > 0, got {self.scale}.")

    @classmethod
    def from_values(cls, values) -> "Scaling":
        """Mean and sample standard deviation (ddof=1) of `values`."""
        x = np.asarray(values, dtype=float)
        if x.size < 2:
            raise ValueError("At least two time values are needed to learn a scaling.")
        sd = float(np.std(x, ddof=1))
        if not math.isfinite(sd) or sd <= 0:
            raise ValueError("Time values have no spread; a time effect is not estimable.")
        return cls(center=float(np.mean(x)), scale=sd)

    def transform(self, values) -> np.ndarray:
        return (np.asarray(values, dtype=float) - self.center) / self.scale

    def inverse(self, scaled) -> np.ndarray:
        return np.asarray(scaled, dtype=float) * self.scale + self.center


@dataclass(frozen=True)
class SurveyDesign:
    """Synthetic monitoring design: treatments x time points x sites, n_surveys visits each.

    The first treatment is the reference level of the occupancy model.
    """
    treatments: Tuple[str, ...]
    time_points: Tuple[float, ...]
    sites_per_treatment: int = DEFAULT_SITES_PER_TREATMENT
    n_surveys: int = DEFAULT_N_SURVEYS

    def __post_init__(self):
        object.__setattr__(self, "treatments", tuple(str(t) for t in self.treatments))
        object.__setattr__(self, "time_points", tuple(float(t) for t in self.time_points))
        if len(self.treatments) < 2:
            raise ValueError("A design needs at least two treatments.")
        if len(set(self.treatments)) != len(self.treatments):
            raise ValueError(f"Treatment labels must be unique, got {self.treatments}.")
        if len(set(self.time_points)) < 2:
            raise ValueError("A design needs at least two distinct time points.")
        if not all(math.isfinite(t) for t in self.time_points):
            raise ValueError("Time points must be finite.")
        if int(self.sites_per_treatment) <= 0:
            raise ValueError("sites_per_treatment must be a positive integer.")
        if int(self.n_surveys) <= 0:
            raise ValueError("n_surveys must be a positive integer.")

    @property
    def n_units(self) -> int:
        return len(self.treatments) * len(self.time_points) * int(self.sites_per_treatment)


@dataclass(frozen=True)
class EffectSizes:
    """Logit-scale occupancy effects and detection probability.

    beta_treatment holds one occupancy level (logit psi at years_scaled = 0) per treatment,
    aligned with SurveyDesign.treatments; it is not a vector of offsets.
    """
    beta_time: float
    beta_treatment: Tuple[float, ...]
    p_detect: float

    def __post_init__(self):
        object.__setattr__(self, "beta_treatment", tuple(float(b) for b in self.beta_treatment))
        if not math.isfinite(self.beta_time):
            raise ValueError("beta_time must be finite.")
        if not all(math.isfinite(b) for b in self.beta_treatment):
            raise ValueError("beta_treatment values must be finite.")
        if not (0.0 < float(self.p_detect) <= 1.0):
            raise ValueError(f"p_detect must be in (0, 1], got {self.p_detect}.")

    def check_design(self, design: SurveyDesign) -> None:
        if len(self.beta_treatment) != len(design.treatments):
            raise ValueError(
                f"beta_treatment has {len(self.beta_treatment)} values but the design has "
                f"{len(design.treatments)} treatments {design.treatments}."
            )


@dataclass
class DetectionHistory:
    """Detection matrix plus row-aligned site covariates.

    `y` is (units x visits); NaN marks visits that did not happen. `visits` is the long
    visit table (real data only); `z` is the latent occupancy state (synthetic data only).
    """
    y: np.ndarray
    site_covs: pd.DataFrame
    scaling: Scaling
    treatment_levels: Tuple[str, ...]
    visits: Optional[pd.DataFrame] = None
    z: Optional[np.ndarray] = None

    @property
    def n_units(self) -> int:
        return int(self.y.shape[0])

    @property
    def n_visits(self) -> int:
        return int(self.y.shape[1])

    @property
    def naive_occupancy(self) -> float:
        """Share of units with at least one detection."""
        return float(np.mean(np.nansum(self.y, axis=1) > 0))


@dataclass
class FittedModel:
    """Maximum-likelihood occupancy fit: coefficient table, covariance and the scaling used."""
    coefficients: pd.DataFrame        # index: term, columns: estimate, se, z, p_value
    vcov: np.ndarray
    scaling: Scaling
    treatment_levels: Tuple[str, ...]
    log_likelihood: float
    n_units: int
    n_visits: int
    n_iter: int

    @property
    def aic(self) -> float:
        return 2.0 * len(self.coefficients) - 2.0 * self.log_likelihood

    @property
    def treatment_terms(self) -> List[str]:
        return [treatment_term(lvl) for lvl in self.treatment_levels[1:]]

    @property
    def p_detect(self) -> float:
        return float(inv_logit(self.coefficients.at[DETECTION_TERM, "estimate"]))

    def estimate(self, term: str) -> float:
        return float(self.coefficients.at[term, "estimate"])

    def p_value(self, term: str) -> float:
        return float(self.coefficients.at[term, "p_value"])

    def treatment_omnibus_p_value(self) -> float:
        """Joint Wald chi-square test that every treatment offset is zero."""
        terms = self.treatment_terms
        idx = [self.coefficients.index.get_loc(t) for t in terms]
        b = self.coefficients["estimate"].to_numpy()[idx]
        v = self.vcov[np.ix_(idx, idx)]
        try:
            wald = float(b @ np.linalg.solve(v, b))
        except np.linalg.LinAlgError:
            return float("nan")
        return float(stats.chi2.sf(wald, df=len(terms)))

    def to_effects(self) -> EffectSizes:
        """Effect sizes for simulation, aligned with `treatment_levels`."""
        b0 = self.estimate(INTERCEPT_TERM)
        levels = [b0] + [b0 + self.estimate(t) for t in self.treatment_terms]
        return EffectSizes(
            beta_time=self.estimate(TIME_TERM),
            beta_treatment=tuple(levels),
            p_detect=self.p_detect,
        )


# ----------------------------
# DETECTION HISTORIES
# ----------------------------

def _treatment_label(treatment_extractor: Callable[[str], str], site: str) -> str:
    label = treatment_extractor(site)
    if label is None or pd.isna(label):
        raise DataIntegrityError(f"No treatment for site '{site}'.")
    label = str(label).strip()
    if not label:
        raise DataIntegrityError(f"Empty treatment label for site '{site}'.")
    return label


def _resolve_levels(labels: Iterable[str], requested: Optional[Sequence[str]]) -> Tuple[str, ...]:
    observed = sorted(set(labels))
    if requested:
        requested = [str(r) for r in requested]
        unknown = sorted(set(observed) - set(requested))
        if unknown:
            raise DataIntegrityError(f"Treatment labels {unknown} are not in {requested}.")
        levels = tuple(r for r in requested if r in observed)
    else:
        levels = tuple(observed)
    if len(levels) < 2:
        raise DataIntegrityError(f"At least two treatments are needed, found {list(levels)}.")
    return levels


def build_detection_history(records: pd.DataFrame,
                            target_species: str,
                            treatment_extractor: Callable[[str], str] = last_two_chars,
                            treatment_levels: Optional[Sequence[str]] = None,
                            location_col: str = LOCATION_COL,
                            datetime_col: str = DATETIME_COL,
                            species_col: str = SPECIES_COL) -> DetectionHistory:
    """Turn raw per-recording records into a (site, date) x visit_num detection matrix.

    Steps:
      1) first survey date per site, over all species;
      2) treatment per site via `treatment_extractor`;
      3) full visit set: distinct (site, timestamp), ranked within (site, date);
      4) target-species visits, detected = 1;
      5) right join onto the visit set, undetected visits = 0;
      6) pivot long-to-wide and standardize years_since_first.
    Raises DataIntegrityError on missing columns, records without location or a
    parseable timestamp, or years_since_first without spread.
    """
    missing = {location_col, datetime_col, species_col} - set(records.columns)
    if missing:
        raise DataIntegrityError(f"Missing required columns: {sorted(missing)}")
    if len(records) == 0:
        raise DataIntegrityError("No detection records supplied.")

    records = records.reset_index(drop=True)
    df = pd.DataFrame({
        "site": records[location_col].astype("string").str.strip(),
        "timestamp": pd.to_datetime(records[datetime_col], errors="coerce"),
        "species": records[species_col].astype("string").str.strip(),
    })
    df["order"] = np.arange(len(df))

    bad = (df["site"].isna() | df["site"].eq("").fillna(True) | df["timestamp"].isna())
    bad = bad.fillna(True).to_numpy(dtype=bool)
    if bad.any():
        first_bad = int(np.flatnonzero(bad)[0])
        raise DataIntegrityError(
            f"{int(bad.sum())} record(s) lack a location or a parseable timestamp "
            f"(first at row {first_bad}); no first survey date can be computed."
        )
    df["site"] = df["site"].astype(str)
    df["date"] = df["timestamp"].dt.normalize()

    # 1) + 2) site-level attributes
    first_survey = df.groupby("site")["date"].min().rename("first_survey")
    site_treatment = {site: _treatment_label(treatment_extractor, site) for site in first_survey.index}
    levels = _resolve_levels(site_treatment.values(), treatment_levels)

    # 3) every recording event is a visit; rank within the day by time, then arrival
    visits = (
        df.sort_values(["site", "timestamp", "order"], kind="mergesort")
          .drop_duplicates(["site", "timestamp"], keep="first")
          [["site", "date", "timestamp"]]
          .reset_index(drop=True)
    )
    visits["visit_num"] = visits.groupby(["site", "date"]).cumcount() + 1
    visits["treatment"] = visits["site"].map(site_treatment)
    visits = visits.merge(first_survey, left_on="site", right_index=True, how="left")
    visits["years_since_first"] = (visits["date"] - visits["first_survey"]).dt.days / DAYS_PER_YEAR

    # 4) + 5)
    detected = (
        df.loc[df["species"].eq(str(target_species)).fillna(False).to_numpy(dtype=bool),
               ["site", "timestamp"]]
          .drop_duplicates()
          .assign(detected=1)
    )
    if detected.empty:
        logger.info("Species %s never recorded; detection history is all zeros.", target_species)
    hist = detected.merge(visits, on=["site", "timestamp"], how="right")
    hist["detected"] = hist["detected"].fillna(0).astype(int)

    # 6) long -> wide
    n_cols = int(hist["visit_num"].max())
    wide = (
        hist.pivot(index=["site", "date"], columns="visit_num", values="detected")
            .reindex(columns=range(1, n_cols + 1))
    )
    covs = (
        hist.drop_duplicates(["site", "date"])
            .set_index(["site", "date"])
            .loc[wide.index, ["treatment", "years_since_first"]]
            .reset_index()
    )
    try:
        scaling = Scaling.from_values(covs["years_since_first"])
    except ValueError as e:
        raise DataIntegrityError(f"Cannot standardize years_since_first: {e}") from e
    covs["years_scaled"] = scaling.transform(covs["years_since_first"])
    covs["treatment"] = pd.Categorical(covs["treatment"], categories=list(levels))

    logger.debug("Detection history: %d units x %d visits, %d sites.",
                 len(wide), n_cols, len(first_survey))
    return DetectionHistory(
        y=wide.to_numpy(dtype=float),
        site_covs=covs,
        scaling=scaling,
        treatment_levels=levels,
        visits=hist.sort_values(["site", "date", "visit_num"]).reset_index(drop=True),
    )


# ----------------------------
# OCCUPANCY MODEL
# ----------------------------

def occupancy_design_matrix(site_covs: pd.DataFrame,
                            treatment_levels: Sequence[str]) -> Tuple[np.ndarray, List[str]]:
    """Intercept, years_scaled and one indicator per non-reference treatment."""
    t = site_covs["years_scaled"].to_numpy(dtype=float)
    trt = site_covs["treatment"].astype(str).to_numpy()
    unknown = sorted(set(trt) - set(treatment_levels))
    if unknown:
        raise ValueError(f"Treatments {unknown} are not among the levels {list(treatment_levels)}.")
    cols = [np.ones_like(t), t] + [(trt == lvl).astype(float) for lvl in treatment_levels[1:]]
    names = [INTERCEPT_TERM, TIME_TERM] + [treatment_term(lvl) for lvl in treatment_levels[1:]]
    return np.column_stack(cols), names


def _negative_log_likelihood(theta: np.ndarray, X: np.ndarray,
                             det: np.ndarray, n_obs: np.ndarray) -> float:
    eta = X @ theta[:-1]
    alpha = theta[-1]
    log_psi = -np.logaddexp(0.0, -eta)
    log_1m_psi = -np.logaddexp(0.0, eta)
    log_p = -np.logaddexp(0.0, -alpha)
    log_q = -np.logaddexp(0.0, alpha)
    ll = np.where(
        det > 0,
        log_psi + det * log_p + (n_obs - det) * log_q,
        np.logaddexp(log_psi + n_obs * log_q, log_1m_psi),
    )
    return -float(np.sum(ll))


def _score(theta: np.ndarray, X: np.ndarray,
           det: np.ndarray, n_obs: np.ndarray) -> np.ndarray:
    """Gradient of the negative log-likelihood."""
    eta = X @ theta[:-1]
    alpha = theta[-1]
    p = float(inv_logit(alpha))
    log_psi = -np.logaddexp(0.0, -eta)
    log_1m_psi = -np.logaddexp(0.0, eta)
    log_q = -np.logaddexp(0.0, alpha)
    # Never-detected units: L = psi * q^n + (1 - psi)
    log_psi_qn = log_psi + n_obs * log_q
    log_L = np.logaddexp(log_psi_qn, log_1m_psi)
    seen = det > 0
    d_eta = np.where(seen, inv_logit(-eta),
                     -np.exp(log_psi + log_1m_psi - log_L) * (1.0 - np.exp(n_obs * log_q)))
    d_alpha = np.where(seen, det * (1.0 - p) - (n_obs - det) * p,
                       -n_obs * p * np.exp(log_psi_qn - log_L))
    return -np.concatenate([X.T @ d_eta, [np.sum(d_alpha)]])


def _numerical_hessian(theta: np.ndarray, args: Tuple, step: float = HESSIAN_STEP) -> np.ndarray:
    """Central-difference Jacobian of the analytic score, symmetrized."""
    H = np.atleast_2d(approx_fprime(theta, _score, epsilon=step * np.maximum(1.0, np.abs(theta)),
                                     args=args, centered=True))
    return 0.5 * (H + H.T)


def fit_occupancy_model(history: DetectionHistory,
                        timeout: Optional[float] = DEFAULT_FIT_TIMEOUT,
                        max_iter: int = DEFAULT_MAX_ITER) -> FittedModel:
    """Fit psi ~ years_scaled + treatment, p ~ 1 by maximum likelihood.

    Raises ModelConvergenceError for degenerate data (no detections, or detection at every
    surveyed visit), optimizer failure, singular or indefinite Hessian, or when the optimizer
    runs longer than `timeout` seconds.
    """
    y = np.asarray(history.y, dtype=float)
    if y.ndim != 2 or y.shape[0] != len(history.site_covs):
        raise ValueError(
            f"Detection matrix shape {y.shape} does not match {len(history.site_covs)} covariate rows."
        )
    observed = ~np.isnan(y)
    det = np.where(observed, y, 0.0).sum(axis=1)
    n_obs = observed.sum(axis=1).astype(float)

    if det.sum() == 0:
        raise ModelConvergenceError("No detections; occupancy is not estimable.")
    if np.all(det[det > 0] == n_obs[det > 0]):
        raise ModelConvergenceError("Detected at every surveyed visit; detection probability is on the boundary.")

    X, names = occupancy_design_matrix(history.site_covs, history.treatment_levels)
    args = (X, det, n_obs)

    # Start from naive occupancy and naive detection rates.
    theta0 = np.zeros(X.shape[1] + 1)
    surveyed = n_obs > 0
    theta0[0] = float(logit(np.mean(det[surveyed] > 0)))
    theta0[-1] = float(logit(det.sum() / n_obs[det > 0].sum()))

    deadline = time.monotonic() + timeout if timeout else None

    def _watchdog(xk):
        if deadline is not None and time.monotonic() > deadline:
            raise _FitTimeout()

    try:
        with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
            res = optimize.minimize(
                _negative_log_likelihood, theta0, args=args, jac=_score,
                method="BFGS", callback=_watchdog, options={"maxiter": int(max_iter)},
            )
    except _FitTimeout as e:
        raise ModelConvergenceError(f"Optimizer exceeded the {timeout:.3g}s time limit.") from e

    if not np.all(np.isfinite(res.x)) or not math.isfinite(res.fun):
        raise ModelConvergenceError("Optimizer returned non-finite estimates.")
    grad = np.asarray(res.jac, dtype=float)
    near_stationary = bool(np.all(np.isfinite(grad)) and np.max(np.abs(grad)) < GRADIENT_TOL)
    if not (res.success or near_stationary):
        raise ModelConvergenceError(f"Optimizer did not converge: {res.message}")

    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        hess = _numerical_hessian(res.x, args)
    try:
        vcov = np.linalg.inv(hess)
    except np.linalg.LinAlgError as e:
        raise ModelConvergenceError("Hessian is singular at the optimum.") from e
    var = np.diag(vcov)
    if not np.all(np.isfinite(var)) or np.any(var <= 0):
        raise ModelConvergenceError("Hessian is not positive definite at the optimum.")

    se = np.sqrt(var)
    zstat = res.x / se
    table = pd.DataFrame(
        {
            "estimate": res.x,
            "se": se,
            "z": zstat,
            "p_value": 2.0 * stats.norm.sf(np.abs(zstat)),
        },
        index=pd.Index(names + [DETECTION_TERM], name="term"),
    )
    return FittedModel(
        coefficients=table,
        vcov=vcov,
        scaling=history.scaling,
        treatment_levels=tuple(history.treatment_levels),
        log_likelihood=-float(res.fun),
        n_units=history.n_units,
        n_visits=history.n_visits,
        n_iter=int(res.nit),
    )


def fit_records(records: pd.DataFrame, target_species: str,
                timeout: Optional[float] = DEFAULT_FIT_TIMEOUT, **builder_kwargs) -> FittedModel:
    """Build the detection history for `target_species` and fit it.

    Convergence failure here is fatal: without a real-data fit there are no effect sizes.
    """
    history = build_detection_history(records, target_species, **builder_kwargs)
    logger.info("Fitting %s: %d units, %d visit columns, naive occupancy %.3f.",
                target_species, history.n_units, history.n_visits, history.naive_occupancy)
    return fit_occupancy_model(history, timeout=timeout)


# ----------------------------
# SYNTHETIC DATA
# ----------------------------

def generate_dataset(design: SurveyDesign,
                     effects: EffectSizes,
                     scaling: Optional[Scaling] = None,
                     rng: Optional[np.random.Generator] = None) -> DetectionHistory:
    """Draw one synthetic occupancy dataset.

    Roster: treatments x time_points x sites_per_treatment (treatment-major). Without `scaling`
    the roster times are standardized afresh, which changes what beta_time means.
    """
    effects.check_design(design)
    rng = rng if rng is not None else np.random.default_rng()

    n_time = len(design.time_points)
    n_sites = int(design.sites_per_treatment)
    roster = pd.DataFrame({
        "treatment": np.repeat(np.array(design.treatments, dtype=object), n_time * n_sites),
        "time": np.tile(np.repeat(np.array(design.time_points, dtype=float), n_sites),
                        len(design.treatments)),
        "replicate": np.tile(np.arange(1, n_sites + 1), len(design.treatments) * n_time),
    })
    if scaling is None:
        scaling = Scaling.from_values(roster["time"])
    roster["years_scaled"] = scaling.transform(roster["time"])

    level_effect = dict(zip(design.treatments, effects.beta_treatment))
    logit_psi = (roster["treatment"].map(level_effect).to_numpy(dtype=float)
                 + effects.beta_time * roster["years_scaled"].to_numpy())
    psi = inv_logit(logit_psi)

    z = rng.binomial(1, psi)
    y = rng.binomial(1, z[:, None] * float(effects.p_detect),
                     size=(len(roster), int(design.n_surveys))).astype(float)

    roster["treatment"] = pd.Categorical(roster["treatment"], categories=list(design.treatments))
    return DetectionHistory(y=y, site_covs=roster, scaling=scaling,
                            treatment_levels=design.treatments, z=z)


# ----------------------------
# POWER SIMULATION
# ----------------------------

@dataclass(frozen=True)
class SimulationTask:
    """Immutable configuration shared by every replicate (and shipped to worker processes)."""
    design: SurveyDesign
    effects: EffectSizes
    scaling: Scaling
    alpha: float
    seed: int
    fit_timeout: Optional[float] = DEFAULT_FIT_TIMEOUT
    max_iter: int = DEFAULT_MAX_ITER


@dataclass(frozen=True)
class ReplicateOutcome:
    index: int
    converged: bool
    time_significant: bool = False
    treatment_significant: bool = False
    level_significant: Tuple[bool, ...] = ()
    omnibus_significant: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class PowerResult:
    """Power estimates over the converged replicates of one run."""
    n_sims: int
    n_converged: int
    alpha: float
    power_time: float
    power_treatment: float
    power_treatment_omnibus: float
    power_treatment_by_level: Dict[str, float]
    seed: Optional[int] = None

    @property
    def n_excluded(self) -> int:
        return self.n_sims - self.n_converged

    def standard_error(self, power: float) -> float:
        """Binomial Monte Carlo standard error of a power estimate."""
        if self.n_converged == 0 or not math.isfinite(power):
            return float("nan")
        return math.sqrt(power * (1.0 - power) / self.n_converged)


@dataclass
class _PowerTally:
    """Order-independent running counts; fed replicate by replicate."""
    levels: Tuple[str, ...]
    n_sims: int = 0
    n_converged: int = 0
    time_hits: int = 0
    treatment_hits: int = 0
    omnibus_hits: int = 0
    level_hits: List[int] = field(default_factory=list)

    def __post_init__(self):
        if not self.level_hits:
            self.level_hits = [0] * len(self.levels)

    def add(self, outcome: ReplicateOutcome) -> None:
        self.n_sims += 1
        if not outcome.converged:
            return
        self.n_converged += 1
        self.time_hits += int(outcome.time_significant)
        self.treatment_hits += int(outcome.treatment_significant)
        self.omnibus_hits += int(outcome.omnibus_significant)
        for j, sig in enumerate(outcome.level_significant):
            self.level_hits[j] += int(sig)

    def result(self, alpha: float, seed: Optional[int] = None) -> PowerResult:
        n = self.n_converged

        def frac(hits: int) -> float:
            return hits / n if n > 0 else float("nan")

        return PowerResult(
            n_sims=self.n_sims,
            n_converged=n,
            alpha=float(alpha),
            power_time=frac(self.time_hits),
            power_treatment=frac(self.treatment_hits),
            power_treatment_omnibus=frac(self.omnibus_hits),
            power_treatment_by_level={lvl: frac(h) for lvl, h in zip(self.levels, self.level_hits)},
            seed=seed,
        )


def replicate_rng(seed: int, index: int) -> np.random.Generator:
    """Private generator for replicate `index`; independent of how replicates are scheduled."""
    return np.random.default_rng(np.random.SeedSequence([int(seed), int(index)]))


def run_replicate(task: SimulationTask, index: int) -> ReplicateOutcome:
    """Generate, fit and test one replicate. Convergence failures are returned, not raised."""
    data = generate_dataset(task.design, task.effects, task.scaling, rng=replicate_rng(task.seed, index))
    try:
        fit = fit_occupancy_model(data, timeout=task.fit_timeout, max_iter=task.max_iter)
    except ModelConvergenceError as e:
        logger.debug("Replicate %d excluded: %s", index, e)
        return ReplicateOutcome(index=index, converged=False, error=str(e))

    level_sig = tuple(bool(fit.p_value(t) < task.alpha) for t in fit.treatment_terms)
    omnibus_p = fit.treatment_omnibus_p_value()
    return ReplicateOutcome(
        index=index,
        converged=True,
        time_significant=bool(fit.p_value(TIME_TERM) < task.alpha),
        # any non-reference level counts as a detected treatment effect
        treatment_significant=any(level_sig),
        level_significant=level_sig,
        omnibus_significant=bool(math.isfinite(omnibus_p) and omnibus_p < task.alpha),
    )


def _run_chunk(payload: Tuple[SimulationTask, int, int]) -> List[ReplicateOutcome]:
    task, start, count = payload
    return [run_replicate(task, i) for i in range(start, start + count)]


def _resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate user-provided n_jobs into a worker count (-1 -> all CPUs, -2 -> all but one)."""
    if n_jobs is None or n_jobs == 0:
        return 1
    if n_jobs < 0:
        cpu = os.cpu_count() or 1
        return max(1, cpu + 1 + n_jobs)
    return max(1, int(n_jobs))


def _chunk_indices(total: int, chunk_size: Optional[int]) -> List[Tuple[int, int]]:
    size = DEFAULT_CHUNK_SIZE if not chunk_size or chunk_size <= 0 else int(chunk_size)
    size = min(size, max(1, total))
    return [(start, min(size, total - start)) for start in range(0, total, size)]


def run_power_simulation(n_sims: int,
                         design: SurveyDesign,
                         effects: EffectSizes,
                         scaling: Scaling,
                         alpha: float = DEFAULT_ALPHA,
                         *,
                         seed: Optional[int] = None,
                         n_jobs: Optional[int] = 1,
                         chunk_size: Optional[int] = None,
                         fit_timeout: Optional[float] = DEFAULT_FIT_TIMEOUT,
                         max_iter: int = DEFAULT_MAX_ITER) -> PowerResult:
    """Monte Carlo power for the time effect and the treatment effect.

    `scaling` must be the real-data scaling (FittedModel.scaling) or one the caller chose
    deliberately; it is not optional. Non-converged replicates are excluded from the
    denominator and reported as `n_excluded`. Results depend on `seed` only, not on
    `n_jobs` or `chunk_size`.
    """
    if int(n_sims) <= 0:
        raise ValueError("n_sims must be a positive integer.")
    if not (0.0 < float(alpha) < 1.0):
        raise ValueError(f"alpha must be in (0, 1), got {alpha}.")
    if scaling is None:
        raise ValueError(
            "scaling is required: pass the real-data fit's scaling so beta_time keeps its meaning."
        )
    if seed is not None and int(seed) < 0:
        raise ValueError("seed must be a non-negative integer.")
    effects.check_design(design)

    if seed is None:
        seed = int(np.random.SeedSequence().entropy)
    task = SimulationTask(design=design, effects=effects, scaling=scaling, alpha=float(alpha),
                          seed=int(seed), fit_timeout=fit_timeout, max_iter=int(max_iter))
    levels = design.treatments[1:]
    tally = _PowerTally(levels=levels)

    n_sims = int(n_sims)
    workers = _resolve_n_jobs(n_jobs)
    started = time.monotonic()
    if workers <= 1:
        for i in range(n_sims):
            tally.add(run_replicate(task, i))
    else:
        payloads = [(task, start, count) for start, count in _chunk_indices(n_sims, chunk_size)]
        max_workers = min(workers, len(payloads)) or 1
        try:
            with ProcessPoolExecutor(max_workers=max_workers) as executor:
                for outcomes in executor.map(_run_chunk, payloads):
                    for outcome in outcomes:
                        tally.add(outcome)
        except (PermissionError, NotImplementedError, OSError):
            logger.warning("Process pool unavailable; running replicates on threads.")
            tally = _PowerTally(levels=levels)
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                for outcomes in executor.map(_run_chunk, payloads):
                    for outcome in outcomes:
                        tally.add(outcome)

    result = tally.result(alpha=alpha, seed=int(seed))
    logger.info("%d replicates in %.1fs (%d converged).",
                n_sims, time.monotonic() - started, result.n_converged)
    if result.n_excluded:
        logger.warning("%d of %d replicates did not converge and were excluded from the power denominator.",
                       result.n_excluded, result.n_sims)
    return result


def power_curve(sites_values: Sequence[int],
                n_sims: int,
                design: SurveyDesign,
                effects: EffectSizes,
                scaling: Scaling,
                alpha: float = DEFAULT_ALPHA,
                **kwargs) -> List[Tuple[int, PowerResult]]:
    """Power across several sites-per-treatment values, everything else held fixed.

    The same seed is reused for every design point so that differences reflect sample size.
    Without a seed, one is drawn here and shared by all points.
    """
    if kwargs.get("seed") is None:
        kwargs["seed"] = int(np.random.SeedSequence().entropy)
    out: List[Tuple[int, PowerResult]] = []
    for n in sites_values:
        point = replace(design, sites_per_treatment=int(n))
        out.append((int(n), run_power_simulation(n_sims, point, effects, scaling, alpha, **kwargs)))
    return out


# ----------------------------
# REPORTING
# ----------------------------

def summarize(result: PowerResult) -> Dict:
    """JSON-serializable summary of a power run."""
    def block(power: float) -> Dict:
        return {"power": power, "mc_se": result.standard_error(power)}

    return {
        "runs": {
            "n_sims": result.n_sims,
            "n_converged": result.n_converged,
            "n_excluded": result.n_excluded,
            "alpha": result.alpha,
            "seed": result.seed,
        },
        "time": block(result.power_time),
        "treatment": {
            "any_level": block(result.power_treatment),
            "omnibus": block(result.power_treatment_omnibus),
            "by_level": {lvl: block(p) for lvl, p in result.power_treatment_by_level.items()},
        },
    }


def interpret(power: float) -> str:
    """Short qualitative reading of a power estimate."""
    if not math.isfinite(power):
        return "No converged replicates: power could not be estimated."
    if power >= 0.80:
        return "Adequate power: the design should detect this effect."
    if power >= 0.50:
        return "Marginal power: more sites or surveys would help."
    return "Low power: the effect is unlikely to be detected with this design."


def print_fit(fit: FittedModel) -> None:
    print("\nOccupancy model (psi ~ years_scaled + treatment, p ~ 1):")
    for term, row in fit.coefficients.iterrows():
        print(f"  {term:<24s} est={row['estimate']:8.3f}  se={row['se']:7.3f}  "
              f"z={row['z']:7.2f}  p={row['p_value']:.4f}")
    print(f"  reference treatment: {fit.treatment_levels[0]}   p_detect={fit.p_detect:.3f}   "
          f"AIC={fit.aic:.1f}   units={fit.n_units}")
    print(f"  time scaling: center={fit.scaling.center:.4f} years, scale={fit.scaling.scale:.4f} years")


def print_report(result: PowerResult, label: Optional[str] = None) -> None:
    title = f"Power ({label})" if label else "Power"
    print(f"\n{title}: {result.n_converged}/{result.n_sims} replicates converged "
          f"({result.n_excluded} excluded), alpha={result.alpha:g}")
    print(f"  time effect:                 {result.power_time:.3f} "
          f"(MC se {result.standard_error(result.power_time):.3f})  {interpret(result.power_time)}")
    print(f"  treatment effect (any level): {result.power_treatment:.3f} "
          f"(MC se {result.standard_error(result.power_treatment):.3f})  {interpret(result.power_treatment)}")
    print(f"  treatment effect (omnibus):   {result.power_treatment_omnibus:.3f}")
    for lvl, p in result.power_treatment_by_level.items():
        print(f"    level {lvl:<6s} {p:.3f}")


CSV_HEADER: Tuple[str, ...] = (
    "sites_per_treatment", "n_sims", "n_converged", "n_excluded", "alpha",
    "power_time", "power_treatment", "power_treatment_omnibus",
)


def write_csv_report(rows: Sequence[Tuple[int, PowerResult]], path) -> None:
    """One line per design point; per-level columns appended as power_<LEVEL>."""
    levels: List[str] = []
    for _, res in rows:
        for lvl in res.power_treatment_by_level:
            if lvl not in levels:
                levels.append(lvl)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(list(CSV_HEADER) + [f"power_{lvl}" for lvl in levels])
        for n, res in rows:
            writer.writerow(
                [n, res.n_sims, res.n_converged, res.n_excluded, res.alpha,
                 f"{res.power_time:.6f}", f"{res.power_treatment:.6f}",
                 f"{res.power_treatment_omnibus:.6f}"]
                + [f"{res.power_treatment_by_level.get(lvl, float('nan')):.6f}" for lvl in levels]
            )


def write_json_report(report: Dict, path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)


def load_records(path) -> pd.DataFrame:
    """Read detection records from CSV (or TSV for .tsv/.tab/.txt)."""
    path = Path(path)
    sep = "\t" if path.suffix.lower() in {".tsv", ".tab", ".txt"} else ","
    return pd.read_csv(path, sep=sep)


# ----------------------------
# CLI
# ----------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Estimate power to detect time and treatment effects on occupancy: fit an occupancy "
            "model to monitoring records (or take effects from the command line), then refit "
            "simulated datasets and count significant results."
        )
    )
    # Real data
    p.add_argument("--records", type=str, default=None, help="CSV/TSV of detection records.")
    p.add_argument("--species", type=str, default=None, help="Target species code (required with --records).")
    p.add_argument("--location_col", type=str, default=LOCATION_COL, help="Column holding the site identifier.")
    p.add_argument("--datetime_col", type=str, default=DATETIME_COL, help="Column holding the recording timestamp.")
    p.add_argument("--species_col", type=str, default=SPECIES_COL, help="Column holding the species code.")
    p.add_argument(
        "--treatments", type=str, default=None,
        help='Treatment order, reference first, e.g. "CC,OG,UP". Defaults to sorted labels.'
    )
    # Manual effects
    p.add_argument(
        "--effects", type=str, default=None,
        help=(
            'Hypothetical effects on the logit scale, e.g. "time=0.5,CC=-0.2,OG=0.3,UP=0.1,p=0.3". '
            "Treatment keys give logit(psi) per level; with --records they override the fitted values."
        ),
    )
    p.add_argument("--center", type=float, default=None, help="Time scaling center (years). Required without --records.")
    p.add_argument("--scale", type=float, default=None, help="Time scaling scale (years). Required without --records.")
    p.add_argument("--beta_time", type=float, default=None, help="Override the time effect (logit per scaled unit).")
    p.add_argument("--p_detect", type=float, default=None, help="Override the per-visit detection probability.")
    # Design
    p.add_argument(
        "--time_points", type=str, default=",".join(f"{t:g}" for t in DEFAULT_TIME_POINTS),
        help="Survey years since first survey, e.g. \"0,1,2,3,4\"."
    )
    p.add_argument("--sites_per_treatment", type=int, default=DEFAULT_SITES_PER_TREATMENT,
                   help="Sites per treatment per time point.")
    p.add_argument("--n_surveys", type=int, default=None,
                   help=f"Visits per site occasion (default: max observed, or {DEFAULT_N_SURVEYS}).")
    p.add_argument("--sweep_sites", type=str, default=None,
                   help='Power curve over sites per treatment, e.g. "10,20,40".')
    # Monte Carlo
    p.add_argument("--n_sims", type=int, default=DEFAULT_N_SIMS, help="Number of simulated datasets.")
    p.add_argument("--alpha", type=float, default=DEFAULT_ALPHA, help="Significance level.")
    p.add_argument("--seed", type=int, default=None, help="Random seed for reproducibility.")
    p.add_argument("--n_jobs", type=int, default=1, help="Worker processes (-1 = all CPUs).")
    p.add_argument("--fit_timeout", type=float, default=DEFAULT_FIT_TIMEOUT,
                   help="Seconds allowed per model fit before it counts as non-converged.")
    # Output
    p.add_argument("--report_json", type=str, default=None, help="Path to save the summary JSON.")
    p.add_argument("--report_csv", type=str, default=None, help="Path to save one CSV line per design point.")
    p.add_argument("--log_level", type=str, default="INFO",
                   help="Logging level (DEBUG, INFO, WARNING, ERROR).")
    return p


def effects_from_keyvals(values: Dict[str, float],
                         treatments: Sequence[str],
                         base: Optional[EffectSizes] = None) -> EffectSizes:
    """Build EffectSizes from parsed --effects pairs, filling gaps from `base`."""
    reserved = {"time", "p"}
    unknown = sorted(k for k in values if k.lower() not in reserved and k not in treatments)
    if unknown:
        raise ValueError(f"Unknown effect keys {unknown}. Use 'time', 'p' or one of {list(treatments)}.")
    lowered = {k.lower(): v for k, v in values.items() if k.lower() in reserved}

    def pick(key, fallback):
        if key in lowered:
            return lowered[key]
        if fallback is None:
            raise ValueError(f"Effect '{key}' is required.")
        return fallback

    beta_time = pick("time", base.beta_time if base else None)
    p_detect = pick("p", base.p_detect if base else None)
    levels = []
    for j, lvl in enumerate(treatments):
        if lvl in values:
            levels.append(values[lvl])
        elif base is not None:
            levels.append(base.beta_treatment[j])
        else:
            raise ValueError(f"Effect for treatment '{lvl}' is required.")
    return EffectSizes(beta_time=beta_time, beta_treatment=tuple(levels), p_detect=p_detect)


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.records is None and args.effects is None:
        parser.error("Give --records (with --species) or --effects (with --center and --scale).")
    if args.records is not None and not args.species:
        parser.error("--species is required with --records.")
    if args.records is None and (args.center is None or args.scale is None):
        parser.error("--center and --scale are required without --records.")
    if args.seed is not None and args.seed < 0:
        parser.error("--seed must be non-negative.")

    try:
        requested = parse_labels(args.treatments)
        manual = parse_keyvals(args.effects, lower_keys=False) if args.effects else {}
        time_points = parse_float_list(args.time_points)
        sweep = parse_int_list(args.sweep_sites) if args.sweep_sites else []
    except ValueError as e:
        parser.error(str(e))

    try:
        fit = None
        if args.records is not None:
            records = load_records(args.records)
            logger.info("Loaded %d records from %s.", len(records), args.records)
            fit = fit_records(
                records, args.species, timeout=args.fit_timeout,
                treatment_levels=requested or None,
                location_col=args.location_col, datetime_col=args.datetime_col,
                species_col=args.species_col,
            )
            print_fit(fit)
            treatments = list(fit.treatment_levels)
            effects = effects_from_keyvals(manual, treatments, base=fit.to_effects())
            scaling = fit.scaling
            if args.center is not None or args.scale is not None:
                logger.warning("Ignoring --center/--scale: the real-data scaling is used with --records.")
        else:
            treatments = requested or sorted(
                k for k in manual if k.lower() not in {"time", "p"}
            )
            effects = effects_from_keyvals(manual, treatments)
            scaling = Scaling(center=args.center, scale=args.scale)

        if args.beta_time is not None or args.p_detect is not None:
            effects = replace(
                effects,
                beta_time=effects.beta_time if args.beta_time is None else args.beta_time,
                p_detect=effects.p_detect if args.p_detect is None else args.p_detect,
            )
        n_surveys = args.n_surveys
        if n_surveys is None:
            n_surveys = fit.n_visits if fit is not None else DEFAULT_N_SURVEYS
        design = SurveyDesign(
            treatments=tuple(treatments),
            time_points=tuple(time_points),
            sites_per_treatment=args.sites_per_treatment,
            n_surveys=n_surveys,
        )
    except ValueError as e:
        parser.error(str(e))
    except OccupancyPowerError as e:
        logger.error("%s: %s", type(e).__name__, e)
        raise SystemExit(1)

    print(f"\nSimulating {args.n_sims} datasets: treatments={list(design.treatments)}, "
          f"time_points={list(design.time_points)}, n_surveys={design.n_surveys}")
    by_level = ", ".join(f"{lvl}={b:.3f}" for lvl, b in zip(design.treatments, effects.beta_treatment))
    print(f"Effects: beta_time={effects.beta_time:.3f}, logit(psi) by treatment: {by_level}, "
          f"p_detect={effects.p_detect:.3f}")

    sim_kwargs = dict(seed=args.seed, n_jobs=args.n_jobs, fit_timeout=args.fit_timeout)
    sites_values = sweep or [design.sites_per_treatment]
    rows = power_curve(sites_values, args.n_sims, design, effects, scaling, args.alpha, **sim_kwargs)
    for n, res in rows:
        print_report(res, label=f"{n} sites per treatment")

    if args.report_json:
        report = {
            "design": {
                "treatments": list(design.treatments),
                "time_points": list(design.time_points),
                "n_surveys": design.n_surveys,
            },
            "effects": {
                "beta_time": effects.beta_time,
                "beta_treatment": dict(zip(design.treatments, effects.beta_treatment)),
                "p_detect": effects.p_detect,
            },
            "scaling": {"center": scaling.center, "scale": scaling.scale},
            "results": [dict(sites_per_treatment=n, **summarize(res)) for n, res in rows],
        }
        write_json_report(report, args.report_json)
        print(f"Saved JSON report to: {args.report_json}")

    if args.report_csv:
        write_csv_report(rows, args.report_csv)
        print(f"Saved CSV report to: {args.report_csv}")


if __name__ == "__main__":
    main()
