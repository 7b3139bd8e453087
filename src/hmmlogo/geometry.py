"""
geometry
========

Numeric layout of a profile HMM logo.  Every model column contributes two
logo columns: an even one for the match state and an odd one for the insert
state.  Column heights are the relative entropy of the emission distribution
against the null model, split between symbols by a height policy; column
widths are the probabilities of reaching the states, obtained with a forward
recurrence over the transitions.  The resulting :class:`LayoutResult` is all a
renderer needs besides the alphabet.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from dataclasses import field as dc_field
from typing import Any, Callable, Dict, Optional

import numpy as np
import pandas as pd
from numba import njit

from hmmlogo.errors import InvalidStartTransitionArity
from hmmlogo.models import DD, DM, IM, MD, MI, MM, ProfileModel


@dataclass(frozen=True)
class GeometryConfig:
    """Immutable layout configuration.

    Attributes
    ----------
    height_policy : str
        Registered height policy, ``emission`` or ``logodds``
    min_height : float
        Heights below this value are reported as absent
    """

    height_policy: str = "emission"
    min_height: float = 0.0


def create_geometry_config(height_policy: str = "emission", min_height: float = 0.0) -> GeometryConfig:
    """Build a validated layout configuration."""
    registry.get(height_policy)
    if min_height < 0:
        raise ValueError(f"min_height must be non-negative, got {min_height}")
    return GeometryConfig(height_policy=height_policy, min_height=float(min_height))


class PolicyRegistry:
    """Registry for height policies using decorator pattern."""

    def __init__(self):
        """Initialize registry state."""
        self._policies: Dict[str, Callable[..., np.ma.MaskedArray]] = {}

    def register(self, key: str):
        """Decorator to register a height policy."""

        def decorator(policy):
            """Store a callable in the registry."""
            self._policies[key] = policy
            logging.debug(f"Registered height policy: {key} -> {policy.__name__}")
            return policy

        return decorator

    def get(self, key: str) -> Callable[..., np.ma.MaskedArray]:
        """Get height policy by key."""
        if key not in self._policies:
            available = list(self._policies.keys())
            raise ValueError(f"Height policy '{key}' not found. Available: {available}")
        return self._policies[key]


registry = PolicyRegistry()


@dataclass(frozen=True, eq=False)
class LayoutResult:
    """Layout handed to the renderer.

    Attributes
    ----------
    widths : np.ndarray
        ``2 * length`` column widths, match and insert columns interleaved
    heights : np.ma.MaskedArray
        ``2 * length x |alphabet|`` symbol heights; masked entries are absent
        and must not be drawn
    max_information_content : float
        Largest summed column height, used for axis scaling
    hitting_probabilities : np.ndarray
        ``length x 3`` probabilities of visiting the match, insert and delete states
    """

    widths: np.ndarray = dc_field(repr=False)
    heights: np.ma.MaskedArray = dc_field(repr=False)
    max_information_content: float
    hitting_probabilities: np.ndarray = dc_field(repr=False)


def interleave_emissions(emissions: np.ndarray) -> np.ndarray:
    """Flatten ``length x |alphabet| x 2`` emissions to ``2 * length x |alphabet|`` rows."""
    length, size, _ = emissions.shape
    flat = np.zeros((2 * length, size), dtype=np.float64)
    flat[0::2] = emissions[:, :, 0]
    flat[1::2] = emissions[:, :, 1]
    return flat


def log_odds(flat: np.ndarray, null_emissions: np.ndarray) -> np.ndarray:
    """Base 2 log-odds against the null model; undefined entries are 0."""
    with np.errstate(divide="ignore", invalid="ignore"):
        odds = np.log2(flat / null_emissions)
    return np.where(np.isfinite(odds), odds, 0.0)


def relative_entropy(flat: np.ndarray, odds: np.ndarray) -> np.ndarray:
    """Relative entropy of every row, ``sum(p * log2(p / q))``."""
    return (flat * odds).sum(axis=1)


@registry.register("emission")
def emission_heights(flat: np.ndarray, odds: np.ndarray, total: np.ndarray) -> np.ma.MaskedArray:
    """Split each column's relative entropy by emission probability."""
    heights = flat * total[:, None]
    return np.ma.masked_array(heights, mask=np.zeros(heights.shape, dtype=bool))


@registry.register("logodds")
def logodds_heights(flat: np.ndarray, odds: np.ndarray, total: np.ndarray) -> np.ma.MaskedArray:
    """Split each column's relative entropy between symbols with positive log-odds, by log-odds."""
    positive = np.ma.masked_where(odds <= 0, odds)
    share = positive / positive.sum(axis=1)[:, None]
    return share * total[:, None]


@njit(cache=True)
def _hitting_probabilities_jit(start, transitions, merge_insert0):
    """Forward recurrence for the match, insert and delete hitting probabilities."""
    n = transitions.shape[0]
    hpm = np.zeros((n, 3), dtype=np.float64)
    if n == 0:
        return hpm

    if merge_insert0:
        hpm[0, 0] = start[0] + start[1]
    else:
        hpm[0, 0] = start[0]
    hpm[0, 1] = hpm[0, 0] * transitions[0, MI]
    hpm[0, 2] = start[2]

    for i in range(1, n):
        hpm[i, 0] = hpm[i - 1, 1] + hpm[i - 1, 0] * transitions[i - 1, MM] + hpm[i - 1, 2] * transitions[i - 1, DM]
        hpm[i, 1] = hpm[i, 0] * transitions[i, MI]
        hpm[i, 2] = hpm[i - 1, 0] * transitions[i - 1, MD] + hpm[i - 1, 2] * transitions[i - 1, DD]

    return hpm


def hitting_probabilities(start_transitions: np.ndarray, transitions: np.ndarray) -> np.ndarray:
    """Return the ``length x 3`` hitting probability matrix.

    A 3 wide start vector (HMMER2) seeds match 1 with B->M1. A 7 wide vector
    (HMMER3) has an insert state 0 that is not displayed, so its mass B->I0
    is added to match 1. Delete 1 is seeded with B->D1 in both cases.
    """
    start = np.ascontiguousarray(start_transitions, dtype=np.float64).ravel()
    if start.size not in (3, 7):
        raise InvalidStartTransitionArity(start.size)
    transitions = np.ascontiguousarray(transitions, dtype=np.float64)
    return _hitting_probabilities_jit(start, transitions, start.size == 7)


def column_widths(hpm: np.ndarray, transitions: np.ndarray) -> np.ndarray:
    """Interleave match widths with insert widths scaled by the expected insert dwell time."""
    widths = np.zeros(2 * hpm.shape[0], dtype=np.float64)
    widths[0::2] = hpm[:, 0]
    # Dwell time is 1 / (1 - p(I->I)) = 1 / p(I->M).
    with np.errstate(divide="ignore", invalid="ignore"):
        inserts = hpm[:, 1] / transitions[:, IM]
    widths[1::2] = np.where(np.isfinite(inserts), inserts, 0.0)
    return widths


def compute(
    profile: ProfileModel, height_policy: Optional[str] = None, config: Optional[GeometryConfig] = None
) -> LayoutResult:
    """Compute the logo layout of a profile."""
    config = config or create_geometry_config()
    policy_key = height_policy or config.height_policy
    policy = registry.get(policy_key)

    flat = interleave_emissions(profile.emissions)
    odds = log_odds(flat, profile.null_emissions)
    total = relative_entropy(flat, odds)

    heights = policy(flat, odds, total)
    mask = np.ma.getmaskarray(heights) | (np.ma.getdata(heights) < config.min_height)
    heights = np.ma.masked_array(np.ma.getdata(heights), mask=mask)

    hpm = hitting_probabilities(profile.start_transitions, profile.transitions)
    widths = column_widths(hpm, profile.transitions)

    column_sums = heights.filled(0.0).sum(axis=1)
    max_ic = float(column_sums.max()) if column_sums.size else 0.0

    logger = logging.getLogger(__name__)
    logger.debug(f"Layout for {profile.name}: policy={policy_key}, columns={widths.size}, maxIC={max_ic:.4f}")

    return LayoutResult(widths=widths, heights=heights, max_information_content=max_ic, hitting_probabilities=hpm)


def flatten(layout: LayoutResult) -> Dict[str, Any]:
    """Convert a layout to plain lists; absent heights become ``None``."""
    icm = [
        [None if masked else float(value) for value, masked in zip(row, mask_row)]
        for row, mask_row in zip(np.ma.getdata(layout.heights), np.ma.getmaskarray(layout.heights))
    ]
    return {
        "width": layout.widths.tolist(),
        "ICM": icm,
        "maxIC": layout.max_information_content,
        "HPM": layout.hitting_probabilities.tolist(),
    }


def logo_dimensions(profile: ProfileModel, layout: LayoutResult, xsize: int = 600, ysize: int = 360) -> pd.DataFrame:
    """Tabulate per-column logo dimensions scaled to an image of ``xsize x ysize``.

    Each row describes one model column: the match column width, the insert
    column width, the width of the insert hitting probability bar and the
    heights of the symbols with positive height (NaN otherwise).
    """
    widths = layout.widths
    total_width = widths.sum()
    x_scale = xsize / total_width if total_width > 0 else 0.0

    ceiling = math.ceil(layout.max_information_content)
    y_scale = ysize / ceiling if ceiling > 0 else 0.0

    hitting = np.ones(widths.size, dtype=np.float64)
    hitting[1::2] = layout.hitting_probabilities[:, 1]

    heights = layout.heights.filled(np.nan)

    records = []
    for k in range(0, widths.size, 2):
        record = {
            "state": k // 2 + 1,
            "match_width": widths[k] * x_scale,
            "insert_width": widths[k + 1] * x_scale,
            "insert_hitting_width": hitting[k + 1] * x_scale,
        }
        for symbol, value in zip(profile.alphabet, heights[k]):
            record[symbol] = value * y_scale if value > 0 else np.nan
        records.append(record)

    columns = ["state", "match_width", "insert_width", "insert_hitting_width", *profile.alphabet]
    return pd.DataFrame(records, columns=columns)
