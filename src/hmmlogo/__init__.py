"""
hmmlogo
==================

This package reads profile hidden Markov models written by HMMER2 and HMMER3
and computes the numeric layout of their sequence logos.  Parsing, score
conversion and layout are kept apart so that a renderer, a network client or a
batch driver can be attached without touching the numerics.

The top level modules expose the following key components:

``io``
    Version-dispatching parser for HMMER2 and HMMER3 text, a HMMER2 writer
    and file/batch readers.

``codec``
    Conversions between score tokens, probabilities and the native score
    encodings of both generations, including the ``*`` zero sentinel.

``models``
    The immutable :class:`ProfileModel` and pure functions on it: state and
    column lookup, column slicing, normalization checks and persistence.

``geometry``
    Information content heights, hitting probabilities and column widths
    combined into a :class:`LayoutResult`.

``errors``
    Exception hierarchy shared by all modules.
"""

from hmmlogo.errors import (
    CodecError,
    FileUnreadable,
    GeometryError,
    HeaderMalformed,
    HmmLogoError,
    InvalidStartTransitionArity,
    InvalidToken,
    ParseError,
    RowMalformed,
    UnsupportedVersion,
)
from hmmlogo.geometry import GeometryConfig, LayoutResult, compute, create_geometry_config
from hmmlogo.io import parse_hmm, read_hmm, read_hmms, write_hmmer2
from hmmlogo.models import ProfileModel

__version__ = "0.1.0"

__all__ = [
    "CodecError",
    "FileUnreadable",
    "GeometryConfig",
    "GeometryError",
    "HeaderMalformed",
    "HmmLogoError",
    "InvalidStartTransitionArity",
    "InvalidToken",
    "LayoutResult",
    "ParseError",
    "ProfileModel",
    "RowMalformed",
    "UnsupportedVersion",
    "compute",
    "create_geometry_config",
    "parse_hmm",
    "read_hmm",
    "read_hmms",
    "write_hmmer2",
]
