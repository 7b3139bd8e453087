"""
Integration tests for hmmlogo based on real HMMER file layouts.

These tests read complete HMMER2 and HMMER3 files, write HMMER2 files back
and compute logo layouts of parsed models.
"""

import logging

import numpy as np
import pytest

from hmmlogo import compute, parse_hmm, read_hmm, read_hmms, write_hmmer2
from hmmlogo.errors import (
    FileUnreadable,
    HeaderMalformed,
    InvalidToken,
    ParseError,
    RowMalformed,
    UnsupportedVersion,
)
from hmmlogo.geometry import flatten
from hmmlogo.io import write_hmm
from hmmlogo.models import (
    DEFAULT_NULL_TRANSITION_SCORES,
    DEFAULT_SPECIAL_TRANSITION_SCORES,
    ProfileModel,
    check_normalization,
    column_to_state,
    from_probabilities,
    slice_columns,
    state_to_column,
)

START_LINE2 = "            0      *      *\n"
INSERT_LINE2 = "     -      0      0      0      0\n"


def _drop_line(text: str, prefix: str) -> str:
    """Remove every line starting with ``prefix``."""
    return "".join(line for line in text.splitlines(keepends=True) if not line.startswith(prefix))


def test_parse_hmmer2_header(hmmer2_text):
    """Test header fields of a HMMER2 nucleotide model"""
    model = parse_hmm(hmmer2_text)

    assert model.generation == 2
    assert model.version == "2.0"
    assert model.name == "toy"
    assert model.accession == "PF99999"
    assert model.description == "Toy nucleotide model"
    assert model.sequence_count == 12
    assert model.alphabet == ("A", "C", "G", "T")
    assert model.length == 3
    assert model.evidence == (-35.5, 0.25)
    assert model.column_map == {1: 1, 2: 3, 3: 4}


def test_parse_hmmer2_matrices(hmmer2_text):
    """Test decoded probabilities of a HMMER2 nucleotide model"""
    model = parse_hmm(hmmer2_text)

    assert model.emissions.shape == (3, 4, 2)
    assert model.transitions.shape == (3, 9)
    np.testing.assert_allclose(model.null_emissions, [0.25] * 4)
    np.testing.assert_allclose(model.start_transitions, [1.0, 0.0, 0.0])
    np.testing.assert_allclose(model.emissions[0, :, 0], [0.5, 0.25, 0.125, 0.125])
    np.testing.assert_allclose(model.emissions[1, :, 0], [1.0, 0.0, 0.0, 0.0])
    np.testing.assert_allclose(model.transitions[0, :7], [0.5, 0.25, 0.25, 0.5, 0.5, 1.0, 0.0])
    assert model.transition_scores[1, 1] == -987654321
    np.testing.assert_array_equal(model.emission_scores[0, :, 0], [1000, 0, -1000, -1000])


def test_hmmer2_rows_sum_to_one(hmmer2_text):
    """Test that every distribution of an exact HMMER2 file sums to one"""
    model = parse_hmm(hmmer2_text)

    np.testing.assert_allclose(model.emissions.sum(axis=1), 1.0, atol=1e-6)
    np.testing.assert_allclose(model.transitions[:, 0:3].sum(axis=1), 1.0, atol=1e-6)
    np.testing.assert_allclose(model.transitions[:, 3:5].sum(axis=1), 1.0, atol=1e-6)
    np.testing.assert_allclose(model.transitions[:, 5:7].sum(axis=1), 1.0, atol=1e-6)
    assert check_normalization(model) == []


def test_parse_hmmer3(hmmer3_text):
    """Test a HMMER3/f model with COMPO line and five trailing match fields"""
    model = parse_hmm(hmmer3_text)

    assert model.generation == 3
    assert model.version == "3/f"
    assert model.name == "toy3"
    assert model.accession == "RF99999"
    assert model.sequence_count == 7
    assert model.length == 2
    assert model.transitions.shape == (2, 7)
    assert model.start_transitions.shape == (7,)
    assert model.null_transitions is None
    assert model.special_transitions is None
    np.testing.assert_allclose(model.composition, [0.25] * 4, atol=1e-5)
    np.testing.assert_allclose(model.null_emissions, [0.25] * 4, atol=1e-5)
    np.testing.assert_allclose(model.emissions[0, :, 0], [0.5, 0.25, 0.125, 0.125], atol=1e-5)
    np.testing.assert_allclose(model.emissions[1, :, 0], [1.0, 0.0, 0.0, 0.0])
    np.testing.assert_allclose(model.transitions.sum(axis=1), [3.0, 3.0], atol=1e-4)
    assert model.consensus == "aA"
    assert model.reference == ""
    assert model.column_map == {1: 1, 2: 2}


def test_parse_hmmer3_older_formats(hmmer3_text):
    """Test HMMER3/b (three trailing fields) and HMMER3/e (four) match lines"""
    text_b = (
        hmmer3_text.replace("HMMER3/f", "HMMER3/b")
        .replace("      1 a - - -", "      1 - -")
        .replace("      2 A - - -", "      2 - -")
    )
    model = parse_hmm(text_b)
    assert model.version == "3/b"
    assert model.consensus == ""
    assert model.column_map == {1: 1, 2: 2}

    text_e = (
        hmmer3_text.replace("HMMER3/f", "HMMER3/e")
        .replace("      1 a - - -", "      1 a - -")
        .replace("      2 A - - -", "      2 A - -")
    )
    assert parse_hmm(text_e).consensus == "aA"


def test_hmmer3_trailing_fields_checked(hmmer3_text):
    """Test that a HMMER3/b match line with five trailing fields is rejected"""
    with pytest.raises(RowMalformed):
        parse_hmm(hmmer3_text.replace("HMMER3/f", "HMMER3/b"))


def test_amino_hmmer2_model(amino_hmmer2):
    """Test a 346 column amino acid model"""
    model = parse_hmm(amino_hmmer2(346))

    assert model.length == 346
    assert model.emissions.shape == (346, 20, 2)
    assert model.transitions.shape == (346, 9)
    assert model.null_emissions[0] == pytest.approx(0.0755, abs=1e-4)
    assert model.start_transitions[1] == 0.0
    assert state_to_column(model, 346) == 348


def test_length_corrected(amino_hmmer2, caplog):
    """Test that the parsed row count wins over the declared length"""
    with caplog.at_level(logging.WARNING):
        model = parse_hmm(amino_hmmer2(4, declared_length=6))

    assert model.length == 4
    assert model.emissions.shape[0] == 4
    assert "correcting" in caplog.text


def test_write_hmmer2_round_trip(hmmer2_text):
    """Test that a written HMMER2 model parses back to identical scores"""
    model = parse_hmm(hmmer2_text)
    again = parse_hmm(write_hmmer2(model))

    assert again.name == model.name
    assert again.accession == model.accession
    assert again.description == model.description
    assert again.sequence_count == model.sequence_count
    assert again.evidence == model.evidence
    assert again.column_map == model.column_map
    np.testing.assert_array_equal(again.emission_scores, model.emission_scores)
    np.testing.assert_array_equal(again.transition_scores, model.transition_scores)
    np.testing.assert_array_equal(again.start_transition_scores, model.start_transition_scores)
    np.testing.assert_array_equal(again.special_transition_scores, model.special_transition_scores)
    np.testing.assert_array_equal(again.null_emission_scores, model.null_emission_scores)
    np.testing.assert_allclose(again.emissions, model.emissions)


def test_write_amino_round_trip(amino_hmmer2, temp_dir):
    """Test file round trip of an amino acid model"""
    model = parse_hmm(amino_hmmer2(12))
    path = temp_dir / "synthetic.hmm"

    write_hmm(model, path)
    again = read_hmm(path)

    assert again.length == 12
    np.testing.assert_array_equal(again.emission_scores, model.emission_scores)
    np.testing.assert_array_equal(again.transition_scores, model.transition_scores)
    np.testing.assert_allclose(again.null_emissions, model.null_emissions)


def test_write_hmmer3_model_rejected(hmmer3_text):
    """Test that HMMER3 models are not written as HMMER2"""
    with pytest.raises(ValueError):
        write_hmmer2(parse_hmm(hmmer3_text))


def test_html_wrapped_text(hmmer2_text):
    """Test that <pre> tags and CRLF line endings are tolerated"""
    text = "<pre>" + hmmer2_text.replace("\n", "\r\n") + "</pre>"
    model = parse_hmm(text)
    assert model.length == 3
    np.testing.assert_allclose(model.emissions[0, :, 0], [0.5, 0.25, 0.125, 0.125])


def test_not_a_hmmer_file():
    """Test that text without a version line is rejected"""
    with pytest.raises(HeaderMalformed):
        parse_hmm("# STOCKHOLM 1.0\n//\n")


def test_unsupported_version(hmmer2_text):
    """Test that unknown generations are rejected"""
    with pytest.raises(UnsupportedVersion) as excinfo:
        parse_hmm(hmmer2_text.replace("HMMER2.0", "HMMER4.0"))
    assert excinfo.value.version == "4.0"


@pytest.mark.parametrize("prefix", ["HMM  ", "LENG"])
def test_missing_header_fields(hmmer2_text, prefix):
    """Test that required header lines are enforced"""
    text = _drop_line(hmmer2_text, prefix)
    if prefix.startswith("HMM"):
        # without the HMM line the model section cannot be located
        text = text.split("         m->m")[0]
    with pytest.raises(HeaderMalformed):
        parse_hmm(text)


def test_missing_name_and_accession(hmmer2_text):
    """Test that a model needs a NAME or an ACC"""
    text = _drop_line(_drop_line(hmmer2_text, "NAME"), "ACC")
    with pytest.raises(HeaderMalformed):
        parse_hmm(text)

    model = parse_hmm(_drop_line(hmmer2_text, "NAME"))
    assert model.name is None
    assert model.accession == "PF99999"


def test_missing_null_emissions(hmmer2_text, caplog):
    """Test that a missing NULE line falls back to a uniform null model"""
    with caplog.at_level(logging.WARNING):
        model = parse_hmm(_drop_line(hmmer2_text, "NULE"))
    np.testing.assert_allclose(model.null_emissions, [0.25] * 4)
    assert "uniform" in caplog.text


def test_missing_terminator(hmmer2_text, caplog):
    """Test that a model without // is still read"""
    with caplog.at_level(logging.WARNING):
        model = parse_hmm(hmmer2_text.replace("//", ""))
    assert model.length == 3
    assert "not terminated" in caplog.text


def test_invalid_score_token(hmmer2_text):
    """Test that a non-numeric score is reported with its line"""
    text = hmmer2_text.replace("  1000      0  -1000", "  1000    abc  -1000")
    with pytest.raises(RowMalformed) as excinfo:
        parse_hmm(text)
    assert "abc" in excinfo.value.line
    assert isinstance(excinfo.value.__cause__, InvalidToken)


def test_wrong_token_count(hmmer2_text):
    """Test that a row with too few scores is rejected"""
    text = hmmer2_text.replace(INSERT_LINE2, "     -      0      0      0\n", 1)
    with pytest.raises(RowMalformed):
        parse_hmm(text)


def test_insert_before_match(hmmer2_text):
    """Test that score rows before the first match line are rejected"""
    text = hmmer2_text.replace(START_LINE2, START_LINE2 + INSERT_LINE2)
    with pytest.raises(RowMalformed) as excinfo:
        parse_hmm(text)
    assert excinfo.value.line.strip() == INSERT_LINE2.strip()


def test_states_out_of_order(hmmer2_text):
    """Test that match states must be numbered consecutively"""
    with pytest.raises(RowMalformed):
        parse_hmm(hmmer2_text.replace("     2   2000", "     5   2000"))


def test_read_hmm_error_has_path(temp_dir):
    """Test that file errors carry the offending path"""
    path = temp_dir / "broken.hmm"
    path.write_text("HMMER2.0\nNAME  broken\n//\n")

    with pytest.raises(ParseError) as excinfo:
        read_hmm(path)
    assert excinfo.value.details["path"] == str(path)


def test_read_hmms_isolates_failures(test_data_dir, temp_dir):
    """Test that one broken file does not stop the others"""
    broken = temp_dir / "broken.hmm"
    broken.write_text("HMMER9\n")
    paths = [test_data_dir / "toy2.hmm", broken, test_data_dir / "toy3.hmm"]

    results = read_hmms(paths, n_jobs=2)

    assert isinstance(results[0], ProfileModel)
    assert isinstance(results[1], UnsupportedVersion)
    assert isinstance(results[2], ProfileModel)
    assert results[2].name == "toy3"


def test_hmmer2_layout(test_data_dir):
    """Test hitting probabilities, widths and heights of the HMMER2 model"""
    layout = compute(read_hmm(test_data_dir / "toy2.hmm"))

    np.testing.assert_allclose(layout.hitting_probabilities[:, 0], [1.0, 0.75, 1.0])
    np.testing.assert_allclose(layout.hitting_probabilities[:, 1], [0.25, 0.0, 0.5])
    np.testing.assert_allclose(layout.hitting_probabilities[:, 2], [0.0, 0.25, 0.0])
    # the last insert state is never left, so it has no width
    np.testing.assert_allclose(layout.widths, [1.0, 0.5, 0.75, 0.0, 1.0, 0.0])
    np.testing.assert_allclose(layout.heights[2].filled(np.nan), [2.0, 0.0, 0.0, 0.0])
    assert layout.max_information_content == pytest.approx(2.0)


def test_hmmer2_logodds_layout(hmmer2_text):
    """Test that only over-represented symbols are drawn with log-odds heights"""
    layout = compute(parse_hmm(hmmer2_text), height_policy="logodds")
    flat = flatten(layout)

    assert flat["ICM"][0] == [pytest.approx(0.25), None, None, None]
    assert flat["ICM"][1] == [None, None, None, None]
    assert flat["ICM"][2] == [pytest.approx(2.0), None, None, None]
    assert flat["maxIC"] == pytest.approx(2.0)


def test_hmmer3_layout(hmmer3_text):
    """Test that B->I0 is folded into the first match column of HMMER3 models"""
    layout = compute(parse_hmm(hmmer3_text))

    np.testing.assert_allclose(layout.widths, [1.0, 0.5, 0.75, 0.0], atol=1e-4)
    assert layout.max_information_content == pytest.approx(2.0, abs=1e-4)


def test_slice_parsed_model(hmmer2_text):
    """Test slicing and column lookups on a parsed model"""
    model = parse_hmm(hmmer2_text)

    assert column_to_state(model, 2) == 1
    assert column_to_state(model, 4) == 3
    assert column_to_state(model, 5) is None

    part = slice_columns(model, 1)
    assert part.length == 2
    assert part.column_map == {1: 3, 2: 4}
    np.testing.assert_allclose(part.emissions[0, :, 0], [1.0, 0.0, 0.0, 0.0])
    assert model.length == 3


def test_zero_declared_length(hmmer2_text, caplog):
    """Test that LENG 0 is corrected to the parsed row count"""
    with caplog.at_level(logging.WARNING):
        model = parse_hmm(hmmer2_text.replace("LENG  3", "LENG  0"))
    assert model.length == 3
    assert "correcting" in caplog.text


@pytest.mark.parametrize(
    "old, new",
    [
        ("NULT      -4  -8455", "NULT      -4  -8455     12     13     14"),
        ("XT      -8455     -4  -1000", "XT      -8455     -4"),
    ],
)
def test_header_transition_counts(hmmer2_text, old, new):
    """Test that XT and NULT lines must hold 8 and 2 scores"""
    with pytest.raises(RowMalformed) as excinfo:
        parse_hmm(hmmer2_text.replace(old, new))
    assert excinfo.value.line.split()[0] == new.split()[0]


def test_header_transition_invalid_token(hmmer2_text):
    """Test that a bad XT score is reported with its line"""
    with pytest.raises(RowMalformed) as excinfo:
        parse_hmm(hmmer2_text.replace("-8455     -4  -1000", "-8455    abc  -1000"))
    assert excinfo.value.line.startswith("XT")
    assert isinstance(excinfo.value.__cause__, InvalidToken)


def test_null_emission_count(hmmer2_text):
    """Test that a NULE line with too few scores is rejected"""
    text = hmmer2_text.replace("NULE       0      0      0      0", "NULE       0      0      0")
    with pytest.raises(RowMalformed) as excinfo:
        parse_hmm(text)
    assert excinfo.value.line.startswith("NULE")


@pytest.mark.parametrize(
    "prefix, attribute, defaults",
    [
        ("XT", "special_transition_scores", DEFAULT_SPECIAL_TRANSITION_SCORES),
        ("NULT", "null_transition_scores", DEFAULT_NULL_TRANSITION_SCORES),
    ],
)
def test_missing_special_transitions(hmmer2_text, caplog, prefix, attribute, defaults):
    """Test that missing XT or NULT lines fall back to default scores"""
    with caplog.at_level(logging.WARNING):
        model = parse_hmm(_drop_line(hmmer2_text, prefix))

    np.testing.assert_array_equal(getattr(model, attribute), defaults)
    assert f"No {prefix} line" in caplog.text
    assert model.length == 3


def test_read_hmms_unreadable_files(test_data_dir, temp_dir):
    """Test that missing and binary files do not stop a batch"""
    binary = temp_dir / "binary.hmm"
    binary.write_bytes(b"\xff\xfe\x80")
    missing = temp_dir / "missing.hmm"

    results = read_hmms([test_data_dir / "toy2.hmm", missing, binary])

    assert isinstance(results[0], ProfileModel)
    assert isinstance(results[1], FileUnreadable)
    assert results[1].path == str(missing)
    assert isinstance(results[2], FileUnreadable)

    with pytest.raises(FileUnreadable) as excinfo:
        read_hmm(missing)
    assert excinfo.value.details["path"] == str(missing)
    assert isinstance(excinfo.value, ParseError)


def test_slice_hmmer3_model(hmmer3_text):
    """Test that slicing a HMMER3 model cuts annotations and keeps the start vector"""
    model = parse_hmm(hmmer3_text)
    part = slice_columns(model, 1)

    assert part.length == 1
    assert part.consensus == "A"
    assert part.reference == ""
    assert part.column_map == {1: 2}
    assert part.start_transitions.shape == (7,)
    np.testing.assert_allclose(part.composition, model.composition)
    assert not np.shares_memory(part.start_transitions, model.start_transitions)
    assert model.consensus == "aA"


def test_write_without_name(hmmer2_text):
    """Test that a model known only by accession is written without NAME"""
    text = write_hmmer2(parse_hmm(_drop_line(hmmer2_text, "NAME")))
    assert "NAME" not in text

    again = parse_hmm(text)
    assert again.name is None
    assert again.accession == "PF99999"

    anonymous = from_probabilities(np.full((1, 4, 2), 0.25), np.zeros((1, 9)), alphabet="ACGT")
    with pytest.raises(ValueError):
        write_hmmer2(anonymous)


if __name__ == "__main__":
    pytest.main([__file__])
