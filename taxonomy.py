"""
Accession -> taxon id -> lineage resolution backed by a SQLite store.

The store uses the taxonomizr layout:

  accessionTaxa(base TEXT, accession TEXT PRIMARY KEY, taxa INTEGER)
  nodes(id INTEGER PRIMARY KEY, rank TEXT, parent INTEGER)
  names(id INTEGER, name TEXT, isScientific BOOLEAN)
"""

from __future__ import annotations

import gzip
import logging
import sqlite3
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

RANKS = (
    "superkingdom",
    "kingdom",
    "phylum",
    "class",
    "order",
    "family",
    "genus",
    "species",
    "subspecies",
)
RANK_ALIASES = {"domain": "superkingdom"}
ROOT_TAXID = 1
QUERY_CHUNK = 500

Lineage = Tuple[Optional[str], ...]
TaxidFallback = Callable[[str], Optional[int]]


@dataclass(frozen=True)
class TaxonomyRecord:
    accession: str
    taxid: int
    lineage: Lineage

    @property
    def lowest_name(self) -> Optional[str]:
        for name in reversed(self.lineage):
            if name:
                return name
        return None

    @property
    def lineage_string(self) -> str:
        return ";".join(name or "" for name in self.lineage)

    def with_rank(self, rank: str, name: str) -> "TaxonomyRecord":
        rank = RANK_ALIASES.get(rank.lower(), rank.lower())
        if rank not in RANKS:
            raise ValueError(f"Unknown rank: {rank}")
        lineage = list(self.lineage)
        lineage[RANKS.index(rank)] = name or None
        return replace(self, lineage=tuple(lineage))


def strip_version(accession: str) -> str:
    return accession.split(".", 1)[0]


def _chunked(items: Sequence, size: int) -> Iterator[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class AccessionTaxaStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Taxonomy store not found: {self.path}")
        self.conn = sqlite3.connect(self.path.resolve().as_uri() + "?mode=ro", uri=True)
        self._lineage_cache: Dict[int, Optional[Lineage]] = {}

    def __enter__(self) -> "AccessionTaxaStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def taxids(self, accessions: Iterable[str]) -> Dict[str, int]:
        accessions = list(dict.fromkeys(accessions))
        versioned = [a for a in accessions if "." in a]
        unversioned = [a for a in accessions if "." not in a]
        found: Dict[str, int] = {}
        cur = self.conn.cursor()
        for chunk in _chunked(versioned, QUERY_CHUNK):
            marks = ",".join("?" * len(chunk))
            cur.execute(f"SELECT accession, taxa FROM accessionTaxa WHERE accession IN ({marks})", list(chunk))
            for accession, taxa in cur.fetchall():
                found[accession] = int(taxa)
        for chunk in _chunked(unversioned, QUERY_CHUNK):
            marks = ",".join("?" * len(chunk))
            cur.execute(f"SELECT base, taxa FROM accessionTaxa WHERE base IN ({marks})", list(chunk))
            for base, taxa in cur.fetchall():
                found.setdefault(base, int(taxa))
        return found

    def lineage(self, taxid: int) -> Optional[Lineage]:
        if taxid in self._lineage_cache:
            return self._lineage_cache[taxid]

        cur = self.conn.cursor()
        names_by_rank: Dict[str, str] = {}
        current = taxid
        seen = set()
        while current not in seen:
            seen.add(current)
            cur.execute(
                "SELECT n.rank, n.parent, m.name FROM nodes n "
                "LEFT JOIN names m ON m.id = n.id AND m.isScientific = 1 "
                "WHERE n.id = ?",
                (current,),
            )
            row = cur.fetchone()
            if row is None:
                if current == taxid:
                    self._lineage_cache[taxid] = None
                    return None
                break
            rank, parent, name = row
            rank = RANK_ALIASES.get(rank, rank)
            if rank in RANKS and rank not in names_by_rank and name:
                names_by_rank[rank] = name
            if current == ROOT_TAXID or parent is None or parent == current:
                break
            current = int(parent)

        lineage = tuple(names_by_rank.get(rank) for rank in RANKS)
        self._lineage_cache[taxid] = lineage
        return lineage


class TaxonomyResolver:
    def __init__(
        self,
        store: AccessionTaxaStore,
        fallbacks: Sequence[TaxidFallback] = (),
        overrides: Optional[Dict[str, int]] = None,
    ):
        self.store = store
        self.fallbacks = list(fallbacks)
        self.overrides = dict(overrides or {})

    def _record(self, accession: str, taxid: int) -> Optional[TaxonomyRecord]:
        lineage = self.store.lineage(taxid)
        if lineage is None or not any(lineage):
            return None
        return TaxonomyRecord(accession=accession, taxid=taxid, lineage=lineage)

    def resolve(self, accessions: Iterable[str]) -> Tuple[Dict[str, TaxonomyRecord], List[str]]:
        accessions = list(dict.fromkeys(accessions))
        resolved: Dict[str, TaxonomyRecord] = {}
        pending: List[str] = []

        for accession in accessions:
            taxid = self.overrides.get(accession, self.overrides.get(strip_version(accession)))
            if taxid is None:
                pending.append(accession)
                continue
            record = self._record(accession, int(taxid))
            if record is None:
                logger.warning("override taxid %s for %s has no lineage in the store", taxid, accession)
                pending.append(accession)
            else:
                resolved[accession] = record

        found = self.store.taxids(pending)
        misses: List[str] = []
        for accession in pending:
            taxid = found.get(accession)
            record = self._record(accession, taxid) if taxid is not None else None
            if record is None:
                misses.append(accession)
            else:
                resolved[accession] = record

        remaining: List[str] = []
        for accession in misses:
            record = None
            for fallback in self.fallbacks:
                taxid = fallback(accession)
                if taxid is None:
                    continue
                record = self._record(accession, taxid)
                if record is not None:
                    break
            if record is None:
                remaining.append(accession)
            else:
                logger.info("resolved %s via fallback (taxid %d)", accession, record.taxid)
                resolved[accession] = record
        return resolved, remaining


def _open_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return path.open("r", encoding="utf-8")


def _dmp_fields(line: str) -> List[str]:
    line = line.rstrip("\r\n")
    # taxdump lines end with '\t|'
    if line.endswith("\t|"):
        line = line[:-2]
    return [part.strip() for part in line.split("\t|\t")]


def iter_scientific_names(names_dmp: Path) -> Iterator[Tuple[int, str]]:
    with _open_text(names_dmp) as fin:
        for raw in fin:
            parts = _dmp_fields(raw)
            if len(parts) < 4 or parts[3] != "scientific name":
                continue
            if not parts[0].isdigit() or not parts[1]:
                continue
            yield int(parts[0]), parts[1]


def iter_nodes(nodes_dmp: Path) -> Iterator[Tuple[int, str, int]]:
    with _open_text(nodes_dmp) as fin:
        for raw in fin:
            parts = _dmp_fields(raw)
            if len(parts) < 3 or not parts[0].isdigit() or not parts[1].isdigit():
                continue
            yield int(parts[0]), parts[2], int(parts[1])


def iter_accession2taxid(path: Path) -> Iterator[Tuple[str, str, int]]:
    with _open_text(path) as fin:
        for raw in fin:
            parts = raw.rstrip("\r\n").split("\t")
            if len(parts) < 3 or not parts[2].isdigit():
                continue
            yield parts[0], parts[1], int(parts[2])


def _batched(rows: Iterable[tuple], size: int = 20000) -> Iterator[List[tuple]]:
    buf: List[tuple] = []
    for row in rows:
        buf.append(row)
        if len(buf) >= size:
            yield buf
            buf = []
    if buf:
        yield buf


def build_taxonomy_tables(conn: sqlite3.Connection, names_dmp: Path, nodes_dmp: Path) -> Tuple[int, int]:
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS names")
    cur.execute("DROP TABLE IF EXISTS nodes")
    cur.execute("CREATE TABLE names (id INTEGER, name TEXT, isScientific BOOLEAN)")
    cur.execute("CREATE TABLE nodes (id INTEGER PRIMARY KEY, rank TEXT, parent INTEGER)")
    names = 0
    for batch in _batched(((tax_id, name, 1) for tax_id, name in iter_scientific_names(names_dmp))):
        cur.executemany("INSERT INTO names (id, name, isScientific) VALUES (?, ?, ?)", batch)
        names += len(batch)
    nodes = 0
    for batch in _batched(iter_nodes(nodes_dmp)):
        cur.executemany("INSERT OR REPLACE INTO nodes (id, rank, parent) VALUES (?, ?, ?)", batch)
        nodes += len(batch)
    cur.execute("CREATE INDEX idx_names_id ON names(id)")
    conn.commit()
    return names, nodes


def build_accession_table(conn: sqlite3.Connection, accession2taxid: Sequence[Path]) -> int:
    cur = conn.cursor()
    cur.execute("DROP TABLE IF EXISTS accessionTaxa")
    cur.execute("CREATE TABLE accessionTaxa (base TEXT, accession TEXT PRIMARY KEY, taxa INTEGER)")
    inserted = 0
    for path in accession2taxid:
        for batch in _batched(iter_accession2taxid(Path(path))):
            cur.executemany(
                "INSERT OR REPLACE INTO accessionTaxa (base, accession, taxa) VALUES (?, ?, ?)",
                batch,
            )
            inserted += len(batch)
    cur.execute("CREATE INDEX idx_accessionTaxa_base ON accessionTaxa(base)")
    conn.commit()
    return inserted


def build_store(
    names_dmp: Path,
    nodes_dmp: Path,
    accession2taxid: Sequence[Path],
    output_db: Path,
) -> Dict[str, int]:
    output_db = Path(output_db)
    output_db.parent.mkdir(parents=True, exist_ok=True)
    if output_db.exists():
        output_db.unlink()

    conn = sqlite3.connect(str(output_db))
    try:
        names, nodes = build_taxonomy_tables(conn, Path(names_dmp), Path(nodes_dmp))
        accessions = build_accession_table(conn, accession2taxid)
    finally:
        conn.close()
    return {"names": names, "nodes": nodes, "accessions": accessions}
