"""
Score codecs for the two HMMER file generations.

HMMER2 stores integer log-odds scores, ``floor(0.5 + 1000 * log2(p / background))``.
HMMER3 stores negated natural logarithms, ``-ln(p)``, printed with five decimals.
In both generations a ``*`` token denotes a zero probability. It is read as
``MIN_SCORE`` and every score at or below ``MIN_SCORE`` is written back as ``*``.
"""

from __future__ import annotations

from typing import Iterable, Tuple, Union

import numpy as np

from hmmlogo.errors import InvalidToken

MIN_SCORE = -987654321
INT_SCALE = 1000
SENTINEL = "*"

Tokens = Union[str, Iterable[str]]


def parse_scores(tokens: Tokens) -> np.ndarray:
    """Convert score tokens (a whitespace separated string or a token list) to a float array."""
    if isinstance(tokens, str):
        tokens = tokens.split()

    values = []
    for token in tokens:
        if token == SENTINEL:
            values.append(float(MIN_SCORE))
            continue
        try:
            value = float(token)
        except ValueError:
            raise InvalidToken(token) from None
        if not np.isfinite(value):
            raise InvalidToken(token)
        values.append(value)

    return np.array(values, dtype=np.float64)


def prob_to_score(prob, background=1.0) -> np.ndarray:
    """Convert probabilities to HMMER2 integer scores."""
    prob = np.asarray(prob, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.floor(0.5 + INT_SCALE * np.log2(prob / background))
    scores = np.where(np.isfinite(scores) & (prob > 0), scores, MIN_SCORE)
    return np.maximum(scores, MIN_SCORE).astype(np.int64)


def score_to_prob(score, background=1.0) -> np.ndarray:
    """Convert HMMER2 integer scores to probabilities."""
    score = np.asarray(score, dtype=np.float64)
    prob = background * np.exp2(score / INT_SCALE)
    return np.where(score <= MIN_SCORE, 0.0, prob)


def prob_to_log(prob) -> np.ndarray:
    """Convert probabilities to HMMER3 negated natural log scores."""
    prob = np.asarray(prob, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = -np.log(prob)
    # HMMER3 scores are positive, so the HMMER2 floor is not a natural zero marker here.
    # It is kept as the sentinel so both generations share one representation.
    return np.where(np.isfinite(scores) & (prob > 0), scores, float(MIN_SCORE))


def log_to_prob(score) -> np.ndarray:
    """Convert HMMER3 negated natural log scores to probabilities."""
    score = np.asarray(score, dtype=np.float64)
    with np.errstate(over="ignore"):
        prob = np.exp(-score)
    return np.where(score <= MIN_SCORE, 0.0, prob)


def format_scores2(scores) -> str:
    """Render HMMER2 scores as right aligned integers, sentinel scores as ``*``."""
    out = []
    for value in np.atleast_1d(np.asarray(scores)).ravel():
        if value <= MIN_SCORE:
            out.append(f" {SENTINEL:>6}")
        else:
            out.append(f" {int(value):6d}")
    return "".join(out)


def format_scores3(scores) -> str:
    """Render HMMER3 scores with five decimals, sentinel scores as ``*``."""
    out = []
    for value in np.atleast_1d(np.asarray(scores)).ravel():
        if value <= MIN_SCORE:
            out.append(f" {SENTINEL:>7}")
        else:
            out.append(f" {float(value):.5f}")
    return "".join(out)


def encode(prob, generation: int, background=1.0) -> np.ndarray:
    """Convert probabilities to the native scores of a generation."""
    if generation == 2:
        return prob_to_score(prob, background)
    if generation == 3:
        return prob_to_log(prob)
    raise ValueError(f"Unknown HMMER generation: {generation}")


def decode(score, generation: int, background=1.0) -> np.ndarray:
    """Convert native scores of a generation to probabilities."""
    if generation == 2:
        return score_to_prob(score, background)
    if generation == 3:
        return log_to_prob(score)
    raise ValueError(f"Unknown HMMER generation: {generation}")


def format_scores(scores, generation: int) -> str:
    """Render scores in the textual notation of a generation."""
    if generation == 2:
        return format_scores2(scores)
    if generation == 3:
        return format_scores3(scores)
    raise ValueError(f"Unknown HMMER generation: {generation}")


def decode_tokens(tokens: Tokens, generation: int, background=1.0) -> Tuple[np.ndarray, np.ndarray]:
    """Parse score tokens and return ``(probabilities, scores)``."""
    scores = parse_scores(tokens)
    return decode(scores, generation, background), scores
