"""
Profile Models Module
=====================

This module holds the in-memory representation of a profile HMM together with
pure functions operating on it.

Key Features:
- Immutable data container using a frozen dataclass with read-only arrays
- Probabilities and native scores stored side by side, synchronized once
- Pure functions for state/column lookup, column slicing and persistence
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, replace
from dataclasses import field as dc_field
from typing import Dict, List, Optional, Sequence, Tuple

import joblib
import numpy as np

from hmmlogo import codec

AMINO_ALPHABET = tuple("ACDEFGHIKLMNPQRSTVWY")
NUCLEIC_ALPHABET = tuple("ACGT")

TRANSITION_NAMES = ("m->m", "m->i", "m->d", "i->m", "i->i", "d->m", "d->d", "b->m", "m->e")

# Transition columns grouped by source state; each group is a distribution.
TRANSITION_GROUPS = {"M": slice(0, 3), "I": slice(3, 5), "D": slice(5, 7)}

MM, MI, MD, IM, II, DM, DD = range(7)

# HMMER2 defaults for models that were not read from a file.
DEFAULT_SPECIAL_TRANSITION_SCORES = (-8455, -4, -1000, -1000, -8455, -4, -8455, -4)
DEFAULT_NULL_TRANSITION_SCORES = (-4, -8455)

_ARRAY_FIELDS = (
    "transitions",
    "transition_scores",
    "emissions",
    "emission_scores",
    "null_emissions",
    "null_emission_scores",
    "start_transitions",
    "start_transition_scores",
    "null_transitions",
    "null_transition_scores",
    "special_transitions",
    "special_transition_scores",
    "composition",
)


def transition_arity(generation: int) -> int:
    """Return the number of transition columns stored per model column."""
    if generation == 2:
        return 9
    if generation == 3:
        return 7
    raise ValueError(f"Unknown HMMER generation: {generation}")


@dataclass(frozen=True, eq=False)
class ProfileModel:
    """Immutable profile HMM container.

    Array fields are excluded from hashing and made read-only on construction.

    Attributes
    ----------
    generation : int
        HMMER file generation, 2 or 3
    version : str
        Version token following ``HMMER`` on the first line, e.g. ``2.0`` or ``3/f``
    alphabet : tuple of str
        Ordered emission alphabet, 4 or 20 symbols
    length : int
        Number of model columns
    transitions, transition_scores : np.ndarray
        ``length x 9`` (HMMER2) or ``length x 7`` (HMMER3) transition matrices in
        probability and native score space. Column order is M->M, M->I, M->D, I->M,
        I->I, D->M, D->D and, for HMMER2, B->M, M->E.
    emissions, emission_scores : np.ndarray
        ``length x |alphabet| x 2``; plane 0 holds match, plane 1 insert emissions
    null_emissions, null_emission_scores : np.ndarray
        Background distribution over the alphabet
    start_transitions, start_transition_scores : np.ndarray
        3 entries (B->M1, B->I0, B->D1) for HMMER2, 7 for HMMER3
    null_transitions, special_transitions : np.ndarray or None
        HMMER2 only: null model transitions (2) and N/E/C/J transitions (8)
    evidence : tuple of float or None
        ``(lambda, nu)`` of the calibrated E-value distribution
    column_map : dict
        1-based state index to alignment column
    """

    generation: int
    version: str
    alphabet: Tuple[str, ...]
    length: int
    transitions: np.ndarray = dc_field(hash=False, repr=False)
    transition_scores: np.ndarray = dc_field(hash=False, repr=False)
    emissions: np.ndarray = dc_field(hash=False, repr=False)
    emission_scores: np.ndarray = dc_field(hash=False, repr=False)
    null_emissions: np.ndarray = dc_field(hash=False, repr=False)
    null_emission_scores: np.ndarray = dc_field(hash=False, repr=False)
    start_transitions: np.ndarray = dc_field(hash=False, repr=False)
    start_transition_scores: np.ndarray = dc_field(hash=False, repr=False)
    name: Optional[str] = None
    accession: Optional[str] = None
    description: Optional[str] = None
    sequence_count: Optional[int] = None
    null_transitions: Optional[np.ndarray] = dc_field(default=None, hash=False, repr=False)
    null_transition_scores: Optional[np.ndarray] = dc_field(default=None, hash=False, repr=False)
    special_transitions: Optional[np.ndarray] = dc_field(default=None, hash=False, repr=False)
    special_transition_scores: Optional[np.ndarray] = dc_field(default=None, hash=False, repr=False)
    evidence: Optional[Tuple[float, float]] = None
    column_map: Dict[int, int] = dc_field(default_factory=dict, hash=False, repr=False)
    composition: Optional[np.ndarray] = dc_field(default=None, hash=False, repr=False)
    consensus: str = ""
    reference: str = ""
    structure: str = ""

    def __post_init__(self):
        arity = transition_arity(self.generation)
        size = len(self.alphabet)

        if self.transitions.shape != (self.length, arity):
            raise ValueError(f"Transitions must have shape ({self.length}, {arity}), got {self.transitions.shape}")
        if self.emissions.shape != (self.length, size, 2):
            raise ValueError(f"Emissions must have shape ({self.length}, {size}, 2), got {self.emissions.shape}")
        if self.null_emissions.shape != (size,):
            raise ValueError(f"Null emissions must have {size} entries, got {self.null_emissions.shape}")

        for prob_name in ("transitions", "emissions", "null_emissions", "start_transitions"):
            score_name = prob_name[:-1] + "_scores"
            if getattr(self, prob_name).shape != getattr(self, score_name).shape:
                raise ValueError(f"{prob_name} and {score_name} differ in shape")

        has_hmmer2_fields = self.null_transitions is not None and self.special_transitions is not None
        if self.generation == 2 and not has_hmmer2_fields:
            raise ValueError("HMMER2 models require null and special transitions")
        if self.generation == 3 and (self.null_transitions is not None or self.special_transitions is not None):
            raise ValueError("HMMER3 models have no null or special transitions")

        start_width = 3 if self.generation == 2 else 7
        if self.start_transitions.shape != (start_width,):
            raise ValueError(f"Start transitions must have {start_width} entries, got {self.start_transitions.shape}")
        if self.generation == 2:
            expected = {
                "null_transitions": len(DEFAULT_NULL_TRANSITION_SCORES),
                "special_transitions": len(DEFAULT_SPECIAL_TRANSITION_SCORES),
            }
            for prob_name, width in expected.items():
                score_name = prob_name[:-1] + "_scores"
                for name in (prob_name, score_name):
                    value = getattr(self, name)
                    if value is None or value.shape != (width,):
                        raise ValueError(f"{name} must have {width} entries")

        for name in _ARRAY_FIELDS:
            value = getattr(self, name)
            if value is not None:
                value.flags.writeable = False

    def __hash__(self):
        """Custom hash implementation excluding unhashable fields."""
        return hash((self.generation, self.version, self.name, self.accession, self.length, self.alphabet))


def state_to_column(model: ProfileModel, state: Optional[int]) -> Optional[int]:
    """Return the alignment column of a 1-based state index, if mapped."""
    if not state:
        return None
    return model.column_map.get(state)


def column_to_state(model: ProfileModel, column: Optional[int]) -> Optional[int]:
    """Return the last state whose alignment column does not exceed ``column``."""
    if not column or not model.column_map:
        return None
    mapped = [model.column_map[state] for state in sorted(model.column_map)]
    if column > mapped[-1]:
        return None
    return sum(1 for value in mapped if column >= value)


def slice_columns(model: ProfileModel, start: int, end: Optional[int] = None) -> ProfileModel:
    """Return an independent copy restricted to model columns ``[start, end)`` (0-based)."""
    end = model.length if end is None else end
    if not 0 <= start < end <= model.length:
        raise ValueError(f"Invalid column range [{start}, {end}) for model of length {model.length}")

    column_map = {state - start: col for state, col in model.column_map.items() if start < state <= end}

    def _cut(text: str) -> str:
        return text[start:end] if len(text) == model.length else text

    return replace(
        model,
        length=end - start,
        transitions=model.transitions[start:end].copy(),
        transition_scores=model.transition_scores[start:end].copy(),
        emissions=model.emissions[start:end].copy(),
        emission_scores=model.emission_scores[start:end].copy(),
        null_emissions=model.null_emissions.copy(),
        null_emission_scores=model.null_emission_scores.copy(),
        start_transitions=model.start_transitions.copy(),
        start_transition_scores=model.start_transition_scores.copy(),
        null_transitions=None if model.null_transitions is None else model.null_transitions.copy(),
        null_transition_scores=None if model.null_transition_scores is None else model.null_transition_scores.copy(),
        special_transitions=None if model.special_transitions is None else model.special_transitions.copy(),
        special_transition_scores=(
            None if model.special_transition_scores is None else model.special_transition_scores.copy()
        ),
        composition=None if model.composition is None else model.composition.copy(),
        column_map=column_map,
        consensus=_cut(model.consensus),
        reference=_cut(model.reference),
        structure=_cut(model.structure),
    )


def check_normalization(model: ProfileModel, tol: float = 1e-6) -> List[Tuple[str, int]]:
    """Return ``(array, row)`` pairs whose probabilities do not sum to one within ``tol``."""
    offending = []

    for plane, label in ((0, "match"), (1, "insert")):
        sums = model.emissions[:, :, plane].sum(axis=1)
        for row in np.where(np.abs(sums - 1.0) > tol)[0]:
            offending.append((f"{label}_emissions", int(row)))

    for group, columns in TRANSITION_GROUPS.items():
        sums = model.transitions[:, columns].sum(axis=1)
        for row in np.where(np.abs(sums - 1.0) > tol)[0]:
            offending.append((f"{group}_transitions", int(row)))

    if abs(model.null_emissions.sum() - 1.0) > tol:
        offending.append(("null_emissions", 0))

    if offending:
        logger = logging.getLogger(__name__)
        logger.warning(f"{len(offending)} row(s) of model {model.name} deviate from 1.0 by more than {tol}")

    return offending


def from_probabilities(
    emissions: np.ndarray,
    transitions: np.ndarray,
    alphabet: Optional[Sequence[str]] = None,
    null_emissions: Optional[np.ndarray] = None,
    start_transitions: Optional[np.ndarray] = None,
    generation: int = 2,
    version: Optional[str] = None,
    name: Optional[str] = None,
    accession: Optional[str] = None,
    description: Optional[str] = None,
    sequence_count: Optional[int] = None,
    evidence: Optional[Tuple[float, float]] = None,
    column_map: Optional[Dict[int, int]] = None,
) -> ProfileModel:
    """Build a model from probability arrays, deriving the native scores once."""
    emissions = np.asarray(emissions, dtype=np.float64)
    transitions = np.asarray(transitions, dtype=np.float64)
    alphabet = tuple(alphabet) if alphabet is not None else AMINO_ALPHABET
    size = len(alphabet)

    if null_emissions is None:
        null_emissions = np.full(size, 1.0 / size)
    null_emissions = np.asarray(null_emissions, dtype=np.float64)

    if start_transitions is None:
        start_transitions = [1.0, 0.0, 0.0] if generation == 2 else [1.0, 0.0, 0.0, 1.0, 0.0, 1.0, 0.0]
    start_transitions = np.asarray(start_transitions, dtype=np.float64)

    extra = {}
    if generation == 2:
        emission_scores = codec.prob_to_score(emissions, null_emissions[:, None])
        null_emission_scores = codec.prob_to_score(null_emissions, 1.0 / size)
        transition_scores = codec.prob_to_score(transitions)
        start_scores = codec.prob_to_score(start_transitions)
        special_scores = np.array(DEFAULT_SPECIAL_TRANSITION_SCORES, dtype=np.float64)
        null_transition_scores = np.array(DEFAULT_NULL_TRANSITION_SCORES, dtype=np.float64)
        extra = dict(
            special_transitions=codec.score_to_prob(special_scores),
            special_transition_scores=special_scores,
            null_transitions=codec.score_to_prob(null_transition_scores),
            null_transition_scores=null_transition_scores,
        )
    else:
        emission_scores = codec.prob_to_log(emissions)
        null_emission_scores = codec.prob_to_log(null_emissions)
        transition_scores = codec.prob_to_log(transitions)
        start_scores = codec.prob_to_log(start_transitions)

    return ProfileModel(
        generation=generation,
        version=version or ("2.0" if generation == 2 else "3/f"),
        alphabet=alphabet,
        length=emissions.shape[0],
        transitions=transitions.copy(),
        transition_scores=np.asarray(transition_scores, dtype=np.float64),
        emissions=emissions.copy(),
        emission_scores=np.asarray(emission_scores, dtype=np.float64),
        null_emissions=null_emissions.copy(),
        null_emission_scores=np.asarray(null_emission_scores, dtype=np.float64),
        start_transitions=start_transitions.copy(),
        start_transition_scores=np.asarray(start_scores, dtype=np.float64),
        name=name,
        accession=accession,
        description=description,
        sequence_count=sequence_count,
        evidence=evidence,
        column_map=dict(column_map or {}),
        **extra,
    )


def save_profile(model: ProfileModel, path: str) -> None:
    """Write a model to a joblib pickle."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    joblib.dump(model, path)


def load_profile(path: str) -> ProfileModel:
    """Load a model written by :func:`save_profile`."""
    model = joblib.load(path)
    if not isinstance(model, ProfileModel):
        raise ValueError(f"{path} does not contain a ProfileModel")
    # Unpickled arrays come back writable.
    return replace(model, column_map=copy.copy(model.column_map))
