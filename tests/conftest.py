"""
Pytest configuration and common fixtures for hmmlogo tests.
"""
import tempfile
from pathlib import Path

import pytest

# Default HMMER2 amino acid null model scores.
AMINO_NULE = (595, -1558, 85, 338, -294, 453, -1158, 197, 249, 902, -1085, -142, -21, -313, 45, 531, 201, 384, -1998, -644)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_data_dir():
    """Return path to test data directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def hmmer2_text(test_data_dir):
    """Text of the HMMER2 nucleotide fixture."""
    return (test_data_dir / "toy2.hmm").read_text()


@pytest.fixture
def hmmer3_text(test_data_dir):
    """Text of the HMMER3/f nucleotide fixture."""
    return (test_data_dir / "toy3.hmm").read_text()


def make_amino_hmmer2(length: int, declared_length=None) -> str:
    """Build a HMMER2 amino acid model with ``length`` states."""
    alphabet = "ACDEFGHIKLMNPQRSTVWY"

    def row(values):
        return "".join(f" {v:>6}" for v in values)

    lines = [
        "HMMER2.0  [2.3.2]",
        "NAME  synthetic",
        "ACC   PF00001.1",
        "DESC  Synthetic amino acid model",
        f"LENG  {declared_length or length}",
        "ALPH  Amino",
        "RF    no",
        "CS    no",
        "MAP   yes",
        "NSEQ  40",
        "XT    " + row([-8455, -4, -1000, -1000, -8455, -4, -8455, -4]),
        "NULT  " + row([-4, -8455]),
        "NULE  " + row(AMINO_NULE),
        "EVD   -46.6   0.23",
        "HMM        " + "      ".join(alphabet),
        "         m->m   m->i   m->d   i->m   i->i   d->m   d->d   b->m   m->e",
        "      " + row([-7, "*", -7763]),
    ]
    for k in range(1, length + 1):
        match = [((k * 37 + j * 11) % 700) - 350 for j in range(20)]
        lines.append(f"{k:6d}" + row(match) + f"{k + 2:6d}")
        lines.append("     -" + row([-149, -500, 233, 43, -381, 399, 106, -626, 210, -466,
                                    -720, 275, 394, 45, 96, 359, 117, -369, -294, -249]))
        lines.append("     -" + row([-8, -7769, -8811, -894, -1115, -701, -1378, "*" if k > 1 else -7, "*"]))
    lines.append("//")
    return "\n".join(lines) + "\n"


@pytest.fixture
def amino_hmmer2():
    """Factory for synthetic HMMER2 amino acid models."""
    return make_amino_hmmer2
