from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from joblib import Parallel, delayed

from hmmlogo import codec
from hmmlogo.errors import CodecError, FileUnreadable, HeaderMalformed, ParseError, RowMalformed, UnsupportedVersion
from hmmlogo.models import (
    AMINO_ALPHABET,
    DEFAULT_NULL_TRANSITION_SCORES,
    DEFAULT_SPECIAL_TRANSITION_SCORES,
    NUCLEIC_ALPHABET,
    TRANSITION_NAMES,
    ProfileModel,
)

TERMINATOR = "//"

_VERSION_RE = re.compile(r"^HMMER(\S+)")
_TRANSITION_MARKER_RE = re.compile(r"\w->\w")
_PRE_TAG_RE = re.compile(r"</?pre>", re.IGNORECASE)

# Trailing fields after the scores of a HMMER3 match line, by format letter.
_HMMER3_TRAILING = {
    3: ("map", "reference", "structure"),
    4: ("map", "consensus", "reference", "structure"),
    5: ("map", "consensus", "reference", "mask", "structure"),
}


class MatchRecord(NamedTuple):
    """Fields of one match-emission line."""

    state: int
    scores: List[str]
    column: Optional[int] = None
    consensus: str = "-"
    reference: str = "-"
    mask: str = "-"
    structure: str = "-"


class _StateRows:
    """Score rows collected for one model column."""

    def __init__(self, record: MatchRecord, line: str):
        self.record = record
        self.line = line
        self.match: Optional[Tuple[np.ndarray, np.ndarray]] = None
        self.insert: Optional[Tuple[np.ndarray, np.ndarray]] = None
        self.transitions: Optional[Tuple[np.ndarray, np.ndarray]] = None

    @property
    def complete(self) -> bool:
        return self.match is not None and self.insert is not None and self.transitions is not None


class ParserRegistry:
    """Registry of format parsers keyed by HMMER generation."""

    def __init__(self):
        """Initialize registry state."""
        self._parsers: Dict[int, Callable[[List[str], str], ProfileModel]] = {}

    def register(self, generation: int):
        """Decorator to register the parser of one generation."""

        def decorator(parser):
            """Store a callable in the registry."""
            self._parsers[generation] = parser
            logging.debug(f"Registered HMMER{generation} parser: {parser.__name__}")
            return parser

        return decorator

    def get(self, version: str) -> Callable[[List[str], str], ProfileModel]:
        """Get the parser for a version token such as ``2.0`` or ``3/f``."""
        generation = int(version[0]) if version[:1].isdigit() else None
        if generation not in self._parsers:
            raise UnsupportedVersion(version)
        return self._parsers[generation]


registry = ParserRegistry()


def parse_hmm(text: str) -> ProfileModel:
    """Parse the text of a HMMER2 or HMMER3 file into a profile model."""
    text = _PRE_TAG_RE.sub("", text).replace("\r\n", "\n")
    lines = text.strip().split("\n")

    match = _VERSION_RE.match(lines[0].strip())
    if match is None:
        raise HeaderMalformed("First line does not contain a HMMER version")

    version = match.group(1)
    parser = registry.get(version)
    return parser(lines[1:], version)


def read_hmm(path: Union[str, Path]) -> ProfileModel:
    """Read and parse a HMMER file."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            text = handle.read()
    except (OSError, UnicodeDecodeError) as err:
        raise FileUnreadable(str(path), str(err)) from err

    try:
        model = parse_hmm(text)
    except ParseError as err:
        err.details["path"] = str(path)
        raise

    logger = logging.getLogger(__name__)
    logger.info(f"Parsed HMMER{model.version} model {model.name or model.accession} ({model.length} columns) from {path}")
    return model


def _read_or_error(path: Union[str, Path]) -> Union[ProfileModel, ParseError]:
    """Parse one file, returning the parse error instead of raising it."""
    try:
        return read_hmm(path)
    except ParseError as err:
        logger = logging.getLogger(__name__)
        logger.warning(f"Skipping {path}: {err.message}")
        return err


def read_hmms(paths: Iterable[Union[str, Path]], n_jobs: int = 1) -> List[Union[ProfileModel, ParseError]]:
    """Parse many files independently; failed files yield their ParseError in place of a model."""
    return Parallel(n_jobs=n_jobs, backend="loky")(delayed(_read_or_error)(path) for path in paths)


def _split_tag(line: str) -> Tuple[str, str]:
    """Split a header line into its tag and the remaining text."""
    parts = line.strip().split(None, 1)
    if not parts:
        return "", ""
    return parts[0], parts[1].strip() if len(parts) > 1 else ""


def _decode(line: str, tokens: Sequence[str], generation: int, background=1.0) -> Tuple[np.ndarray, np.ndarray]:
    """Decode score tokens of a line, reporting bad tokens as a malformed row."""
    try:
        return codec.decode_tokens(tokens, generation, background)
    except CodecError as err:
        raise RowMalformed(line) from err


def _decode_fixed(line: str, tokens: Sequence[str], count: int) -> Tuple[np.ndarray, np.ndarray]:
    """Decode a header line that must hold exactly ``count`` scores against background 1."""
    if len(tokens) != count:
        raise RowMalformed(line)
    return _decode(line, tokens, 2)


def _parse_int(value: str, field: str) -> int:
    try:
        return int(value.split()[0])
    except (ValueError, IndexError):
        raise HeaderMalformed(f"Invalid {field} value: {value!r}") from None


def _check_header(header: dict, alphabet: Optional[Tuple[str, ...]]) -> None:
    if alphabet is None:
        raise HeaderMalformed("No model section (HMM line) found")
    if len(alphabet) not in (len(NUCLEIC_ALPHABET), len(AMINO_ALPHABET)):
        raise HeaderMalformed(f"Alphabet must have 4 or 20 symbols, got {len(alphabet)}")
    if header.get("length") is None:
        raise HeaderMalformed("Header does not declare the model length (LENG)")
    if not header.get("name") and not header.get("accession"):
        raise HeaderMalformed("Header has neither NAME nor ACC")


def _match_record2(tokens: List[str], size: int, line: str) -> MatchRecord:
    """HMMER2 match line: index, scores and an optional alignment column."""
    scores = tokens[1:]
    column = None
    if len(scores) == size + 1:
        if not scores[-1].isdigit():
            raise RowMalformed(line)
        column = int(scores[-1])
        scores = scores[:-1]
    elif len(scores) != size:
        raise RowMalformed(line)
    return MatchRecord(state=int(tokens[0]), scores=scores, column=column)


def _match_record3(tokens: List[str], size: int, trailing: Tuple[int, ...], line: str) -> MatchRecord:
    """HMMER3 match line: index, scores and the annotation fields of the format version."""
    extra = len(tokens) - 1 - size
    if not tokens[0].isdigit() or extra not in trailing:
        raise RowMalformed(line)

    fields = dict(zip(_HMMER3_TRAILING[extra], tokens[1 + size :]))
    map_value = fields.pop("map")
    if map_value == "-":
        column = None
    elif map_value.isdigit():
        column = int(map_value)
    else:
        raise RowMalformed(line)

    return MatchRecord(state=int(tokens[0]), scores=tokens[1 : 1 + size], column=column, **fields)


def _hmmer3_trailing(version: str) -> Tuple[int, ...]:
    """Return the allowed number of trailing match-line fields for a HMMER3 format letter."""
    letter = re.search(r"/([a-z])", version)
    letter = letter.group(1) if letter else "a"
    if letter <= "d":
        return (3,)
    if letter == "e":
        return (4,)
    return (4, 5)


def _correct_length(header: dict, rows: List[_StateRows]) -> int:
    """Return the parsed row count, warning when the declared length disagrees."""
    if header["length"] != len(rows):
        logger = logging.getLogger(__name__)
        logger.warning(
            f"Length given in annotation ({header['length']}) is not identical to number of states "
            f"in model ({len(rows)}), correcting..."
        )
    return len(rows)


def _stack(rows: List[_StateRows]) -> Dict[str, np.ndarray]:
    """Stack per-column rows into the model matrices."""
    for state in rows:
        if not state.complete:
            raise RowMalformed(state.line, f"Incomplete state {state.record.state}: {state.line.strip()!r}")
    return {
        "emissions": np.stack([np.stack([s.match[0], s.insert[0]], axis=-1) for s in rows]),
        "emission_scores": np.stack([np.stack([s.match[1], s.insert[1]], axis=-1) for s in rows]),
        "transitions": np.stack([s.transitions[0] for s in rows]),
        "transition_scores": np.stack([s.transitions[1] for s in rows]),
        "column_map": {s.record.state: s.record.column for s in rows if s.record.column is not None},
    }


def _next_content(lines: List[str], position: int) -> Tuple[int, Optional[str]]:
    """Return the index and text of the next non-blank line at or after ``position``."""
    while position < len(lines):
        if lines[position].strip():
            return position, lines[position]
        position += 1
    return position, None


@registry.register(2)
def parse_hmmer2(lines: List[str], version: str) -> ProfileModel:
    """Parse the body of a HMMER2 file (everything after the version line)."""
    logger = logging.getLogger(__name__)
    header: dict = {}
    alphabet = None
    alphabet_size = None
    position = 0

    for position, line in enumerate(lines):
        tag, value = _split_tag(line)
        if tag == TERMINATOR:
            break
        if tag == "HMM":
            alphabet = tuple(value.split())
            break
        if tag == "NAME":
            header["name"] = value.split()[0] if value else None
        elif tag == "ACC":
            header["accession"] = value.split()[0] if value else None
        elif tag == "DESC":
            header["description"] = value
        elif tag == "LENG":
            header["length"] = _parse_int(value, "LENG")
        elif tag == "ALPH":
            alphabet_size = 20 if value.split()[:1] == ["Amino"] else 4
        elif tag == "NSEQ":
            header["sequence_count"] = _parse_int(value, "NSEQ")
        elif tag == "XT":
            header["special"] = _decode_fixed(line, value.split(), len(DEFAULT_SPECIAL_TRANSITION_SCORES))
        elif tag == "NULT":
            header["null_transitions"] = _decode_fixed(line, value.split(), len(DEFAULT_NULL_TRANSITION_SCORES))
        elif tag == "NULE":
            tokens = value.split()
            header["null_emissions"] = _decode(line, tokens, 2, 1.0 / (alphabet_size or len(tokens)))
            header["null_emissions_line"] = line
        elif tag == "EVD":
            tokens = value.split()
            if len(tokens) >= 2:
                _, evidence = _decode(line, tokens[:2], 2)
                header["evidence"] = (float(evidence[0]), float(evidence[1]))

    _check_header(header, alphabet)
    size = len(alphabet)

    for key, tag, defaults in (
        ("special", "XT", DEFAULT_SPECIAL_TRANSITION_SCORES),
        ("null_transitions", "NULT", DEFAULT_NULL_TRANSITION_SCORES),
    ):
        if key not in header:
            logger.warning(f"No {tag} line in model {header.get('name')}, using default scores")
            scores = np.array(defaults, dtype=np.float64)
            header[key] = (codec.score_to_prob(scores), scores)

    if "null_emissions" in header:
        null_emissions, null_scores = header["null_emissions"]
        if null_emissions.size != size:
            raise RowMalformed(header["null_emissions_line"])
    else:
        logger.warning(f"No NULE line in model {header.get('name')}, using a uniform null model")
        null_emissions = np.full(size, 1.0 / size)
        null_scores = np.zeros(size)

    position, line = _next_content(lines, position + 1)
    if line is None or not _TRANSITION_MARKER_RE.search(line):
        raise HeaderMalformed("Missing transition names line after HMM line")

    position, line = _next_content(lines, position + 1)
    if line is None:
        raise HeaderMalformed("Missing start transitions line")
    start_tokens = line.split()
    if len(start_tokens) != 3:
        raise RowMalformed(line)
    start, start_scores = _decode(line, start_tokens, 2)

    rows: List[_StateRows] = []
    terminated = False
    for line in lines[position + 1 :]:
        tokens = line.split()
        if not tokens:
            continue
        if line.strip() == TERMINATOR:
            terminated = True
            break

        if tokens[0].isdigit():
            record = _match_record2(tokens, size, line)
            if record.state != len(rows) + 1:
                raise RowMalformed(line, f"Expected state {len(rows) + 1}: {line.strip()!r}")
            state = _StateRows(record, line)
            state.match = _decode(line, record.scores, 2, null_emissions)
            rows.append(state)
            continue

        state = rows[-1] if rows else None
        if state is None:
            raise RowMalformed(line)
        if len(tokens) - 1 == 9 and state.transitions is None:
            state.transitions = _decode(line, tokens[1:], 2)
        elif len(tokens) - 1 == size and state.insert is None:
            state.insert = _decode(line, tokens[1:], 2, null_emissions)
        else:
            raise RowMalformed(line)

    if not rows:
        raise HeaderMalformed("Model section contains no states")
    if not terminated:
        logger.warning(f"Model {header.get('name')} is not terminated by {TERMINATOR}")

    length = _correct_length(header, rows)
    special, special_scores = header["special"]
    null_transitions, null_transition_scores = header["null_transitions"]

    return ProfileModel(
        generation=2,
        version=version,
        alphabet=alphabet,
        length=length,
        null_emissions=null_emissions,
        null_emission_scores=null_scores,
        start_transitions=start,
        start_transition_scores=start_scores,
        name=header.get("name"),
        accession=header.get("accession"),
        description=header.get("description"),
        sequence_count=header.get("sequence_count"),
        null_transitions=null_transitions,
        null_transition_scores=null_transition_scores,
        special_transitions=special,
        special_transition_scores=special_scores,
        evidence=header.get("evidence"),
        **_stack(rows),
    )


@registry.register(3)
def parse_hmmer3(lines: List[str], version: str) -> ProfileModel:
    """Parse the body of a HMMER3 file (everything after the version line)."""
    logger = logging.getLogger(__name__)
    header: dict = {}
    alphabet = None
    position = 0

    for position, line in enumerate(lines):
        tag, value = _split_tag(line)
        if tag == TERMINATOR:
            break
        if tag == "HMM":
            alphabet = tuple(value.split())
            break
        if tag == "NAME":
            header["name"] = value.split()[0] if value else None
        elif tag == "ACC":
            header["accession"] = value.split()[0] if value else None
        elif tag == "DESC":
            header["description"] = value
        elif tag == "LENG":
            header["length"] = _parse_int(value, "LENG")
        elif tag == "NSEQ":
            header["sequence_count"] = _parse_int(value, "NSEQ")

    _check_header(header, alphabet)
    size = len(alphabet)

    position, line = _next_content(lines, position + 1)
    if line is None or "m->m" not in line:
        raise HeaderMalformed("Missing transition names line after HMM line")

    position, line = _next_content(lines, position + 1)
    composition = None
    if line is not None and line.split()[0] == "COMPO":
        tokens = line.split()[1:]
        if len(tokens) != size:
            raise RowMalformed(line)
        composition, _ = _decode(line, tokens, 3)
        position, line = _next_content(lines, position + 1)

    if line is None or len(line.split()) != size:
        raise RowMalformed(line or "")
    null_emissions, null_scores = _decode(line, line.split(), 3)

    position, line = _next_content(lines, position + 1)
    if line is None or len(line.split()) != 7:
        raise RowMalformed(line or "")
    start, start_scores = _decode(line, line.split(), 3)

    trailing = _hmmer3_trailing(version)
    rows: List[_StateRows] = []
    terminated = False
    substate = 0
    for line in lines[position + 1 :]:
        tokens = line.split()
        if not tokens:
            continue
        if line.strip() == TERMINATOR:
            terminated = True
            break

        if substate == 0:
            record = _match_record3(tokens, size, trailing, line)
            if record.state != len(rows) + 1:
                raise RowMalformed(line, f"Expected state {len(rows) + 1}: {line.strip()!r}")
            state = _StateRows(record, line)
            state.match = _decode(line, record.scores, 3)
            rows.append(state)
        elif substate == 1:
            if len(tokens) != size:
                raise RowMalformed(line)
            rows[-1].insert = _decode(line, tokens, 3)
        else:
            if len(tokens) != 7:
                raise RowMalformed(line)
            rows[-1].transitions = _decode(line, tokens, 3)
        substate = (substate + 1) % 3

    if not rows:
        raise HeaderMalformed("Model section contains no states")
    if not terminated:
        logger.warning(f"Model {header.get('name')} is not terminated by {TERMINATOR}")

    length = _correct_length(header, rows)

    def _annotation(field: str) -> str:
        text = "".join(getattr(state.record, field) for state in rows)
        return "" if set(text) == {"-"} else text

    return ProfileModel(
        generation=3,
        version=version,
        alphabet=alphabet,
        length=length,
        null_emissions=null_emissions,
        null_emission_scores=null_scores,
        start_transitions=start,
        start_transition_scores=start_scores,
        name=header.get("name"),
        accession=header.get("accession"),
        description=header.get("description"),
        sequence_count=header.get("sequence_count"),
        composition=composition,
        consensus=_annotation("consensus"),
        reference=_annotation("reference"),
        structure=_annotation("structure"),
        **_stack(rows),
    )


def write_hmmer2(model: ProfileModel) -> str:
    """Render a HMMER2 model as HMMER2 text from its stored scores."""
    if model.generation != 2:
        raise ValueError(f"Only HMMER2 models can be written as HMMER2, got generation {model.generation}")

    if not model.name and not model.accession:
        raise ValueError("A HMMER2 model needs a name or an accession to be written")
    out = [f"HMMER{model.version}"]
    if model.name:
        out.append(f"NAME  {model.name}")
    if model.accession:
        out.append(f"ACC   {model.accession}")
    if model.description:
        out.append(f"DESC  {model.description}")
    out.append(f"LENG  {model.length}")
    out.append(f"ALPH  {'Amino' if len(model.alphabet) > 4 else 'Nucleic'}")
    out.append("RF    no")
    out.append("CS    no")
    out.append(f"MAP   {'yes' if model.column_map else 'no'}")
    if model.sequence_count:
        out.append(f"NSEQ  {model.sequence_count}")
    out.append(f"XT    {codec.format_scores2(model.special_transition_scores)} ")
    out.append(f"NULT {codec.format_scores2(model.null_transition_scores)}")
    out.append(f"NULE {codec.format_scores2(model.null_emission_scores)} ")
    if model.evidence is not None:
        out.append(f"EVD   {model.evidence[0]}   {model.evidence[1]}")
    out.append("HMM        " + "      ".join(model.alphabet) + "    ")
    out.append("       " + "".join(f" {name:>6}" for name in TRANSITION_NAMES))
    out.append("      " + codec.format_scores2(model.start_transition_scores))

    for k in range(model.length):
        column = ""
        if model.column_map:
            column = f" {model.column_map.get(k + 1, k + 1):5d}"
        out.append(f"{k + 1:6d}" + codec.format_scores2(model.emission_scores[k, :, 0]) + column)
        out.append("     -" + codec.format_scores2(model.emission_scores[k, :, 1]) + " ")
        out.append("     -" + codec.format_scores2(model.transition_scores[k]) + " ")

    out.append(TERMINATOR)
    return "\n".join(out) + "\n"


def write_hmm(model: ProfileModel, path: Union[str, Path]) -> None:
    """Write a HMMER2 model to a file."""
    with open(path, "w") as out:
        out.write(write_hmmer2(model))
