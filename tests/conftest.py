"""
Shared pytest fixtures for refdbbuilder tests.
"""

import tempfile
from pathlib import Path

import pytest

from taxonomy import build_store

FWD_12S = "TAGAACAGGCTCCTCTAG"
REV_12S = "TTAGATACCCCACTATGC"
REV_12S_RC = "GCATAGTGGGGTATCTAA"
FWD_12S_RC = "CTAGAGGAGCCTGTTCTA"

INSERT_A = "G" * 20
INSERT_B = "G" * 10 + "A" + "G" * 9
INSERT_C = "G" * 5 + "T" + "G" * 14
INSERT_N = "G" * 9 + "N" + "G" * 10

SALMO_LINEAGE = "Eukaryota;Metazoa;Chordata;Actinopteri;Salmoniformes;Salmonidae;Salmo;Salmo salar;"

# (taxid, parent, rank, scientific name)
TAXA = [
    (1, 1, "no rank", "root"),
    (2759, 1, "domain", "Eukaryota"),
    (33208, 2759, "kingdom", "Metazoa"),
    (7711, 33208, "phylum", "Chordata"),
    (7898, 7711, "class", "Actinopteri"),
    (8006, 7898, "order", "Salmoniformes"),
    (8015, 8006, "family", "Salmonidae"),
    (8028, 8015, "genus", "Salmo"),
    (8030, 8028, "species", "Salmo salar"),
    (8032, 8028, "species", "Salmo trutta"),
    (8782, 7711, "class", "Aves"),
    (9030, 8782, "genus", "Gallus"),
    (9031, 9030, "species", "Gallus gallus"),
    (33090, 2759, "kingdom", "Viridiplantae"),
    (4107, 33090, "genus", "Solanum"),
    (4081, 4107, "species", "Solanum lycopersicum"),
]

ACCESSIONS = [
    ("MN000001.1", 8030),
    ("MN000002.1", 8030),
    ("MN000005.1", 9031),
    ("OQ000010.1", 8030),
    ("OQ000011.1", 8030),
    ("KX000002.1", 4081),
    ("AB000099.1", 999999),
]


def amplicon(insert: str) -> str:
    return FWD_12S + insert + REV_12S_RC


def reverse_amplicon(insert: str) -> str:
    """Reverse strand of ``amplicon(insert)``."""
    complement = {"A": "T", "C": "G", "G": "C", "T": "A", "N": "N"}
    return REV_12S + "".join(complement[b] for b in reversed(insert)) + FWD_12S_RC


def write_taxdump(root: Path) -> dict:
    names = root / "names.dmp"
    nodes = root / "nodes.dmp"
    acc = root / "nucl_gb.accession2taxid"
    with names.open("w", encoding="utf-8") as f:
        for taxid, _, _, name in TAXA:
            f.write(f"{taxid}\t|\t{name}\t|\t\t|\tscientific name\t|\n")
            f.write(f"{taxid}\t|\t{name} (synonym)\t|\t\t|\tsynonym\t|\n")
    with nodes.open("w", encoding="utf-8") as f:
        for taxid, parent, rank, _ in TAXA:
            f.write(f"{taxid}\t|\t{parent}\t|\t{rank}\t|\t\t|\t0\t|\n")
    with acc.open("w", encoding="utf-8") as f:
        f.write("accession\taccession.version\ttaxid\tgi\n")
        for accession, taxid in ACCESSIONS:
            f.write(f"{accession.split('.')[0]}\t{accession}\t{taxid}\t0\n")
    return {"names": names, "nodes": nodes, "accession2taxid": acc}


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after the test."""
    with tempfile.TemporaryDirectory(prefix="refdbbuilder_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def taxdump_files(temp_dir):
    return write_taxdump(temp_dir)


@pytest.fixture
def taxonomy_db(temp_dir, taxdump_files):
    db_path = temp_dir / "accessionTaxa.sql"
    build_store(
        taxdump_files["names"],
        taxdump_files["nodes"],
        [taxdump_files["accession2taxid"]],
        db_path,
    )
    return db_path


@pytest.fixture
def marker_12s():
    return {
        "forward": FWD_12S,
        "reverse": REV_12S,
        "category": "animal",
        "aliases": ["12s"],
        "phrases": ["12S ribosomal RNA"],
        "terms": [],
        "archive": None,
        "manual_edits": None,
        "filters": {},
    }


@pytest.fixture
def archive_fasta_text():
    return (
        f">MN000001.1 Salmo salar mitochondrion 12S\nCCCC{amplicon(INSERT_A)}CCCC\n"
        f">MN000002.1 Salmo salar 12S rRNA gene\nCCCC{reverse_amplicon(INSERT_B)}CCCC\n"
        f">MN000003.1 Gadus morhua 12S\n{amplicon(INSERT_C)}\n"
        f">MN000004.1 Salmo salar no primers\nCCCCGGGGCCCCGGGG\n"
        f">MN000005.1 Gallus gallus 12S\n{amplicon(INSERT_N)}\n"
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
