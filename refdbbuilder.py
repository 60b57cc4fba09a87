import csv
import logging
import os
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, TextIO, Tuple

import typer
from Bio import Entrez, SeqIO
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from primermatch import (
    SOURCE_ARCHIVE,
    SOURCE_GENBANK,
    SOURCE_MANUAL,
    OrientationError,
    SequenceRecord,
    extract_amplicons,
    orient_records,
    trim_to_primer_pair,
)
from taxonomy import RANK_ALIASES, RANKS, AccessionTaxaStore, TaxonomyRecord, TaxonomyResolver, strip_version

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib

app = typer.Typer(
    add_completion=False,
    help="RefDBBuilder - build curated 12SV5 / trnL reference databases from archive and NCBI sequences.",
)
console = Console()
module_logger = logging.getLogger(__name__)

PRIMER_BASES = frozenset("ACGT")
CLEAN_BASES = frozenset("ACGT")
SOURCE_PRIORITY = {SOURCE_ARCHIVE: 0, SOURCE_GENBANK: 1, SOURCE_MANUAL: 2}
EDIT_TYPES = ("add", "omit", "rename")
UNVERIFIED_TAG = "UNVERIFIED"
OUTPUT_DIR_ENV = "REFDB_OUTPUT_DIR"
ACCESSION_RE = re.compile(r"^[A-Z]{1,6}_?\d+(\.\d+)?$")
LEADING_MARKERS_RE = re.compile(r"^[>\s|_]+")
TAXON_XREF_RE = re.compile(r"taxon:(\d+)")


@dataclass(frozen=True)
class ReferenceEntry:
    record: SequenceRecord
    taxonomy: TaxonomyRecord

    @property
    def accession(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class DuplicateGroup:
    kept: ReferenceEntry
    dropped: Tuple[ReferenceEntry, ...]


@dataclass
class ManualEdits:
    add: List[Tuple[str, str]] = field(default_factory=list)
    omit: Set[str] = field(default_factory=set)
    rename: List[Tuple[str, str, str]] = field(default_factory=list)


@dataclass
class PipelineResult:
    entries: List[ReferenceEntry]
    ambiguous: List[ReferenceEntry]
    duplicate_groups: List[DuplicateGroup]
    taxonomy_misses: List[str]
    counters: Dict[str, int]


def print_header() -> None:
    console.print(
        Panel(
            "Archive + NCBI retrieval, primer trimming, taxonomy join",
            title="RefDBBuilder",
            subtitle="reference DB builder",
            expand=False,
        )
    )


def render_run_table(
    config: Path,
    marker_key: str,
    marker_cfg: Dict,
    organisms: List[str],
    archive: Optional[Path],
    out_dir: Path,
    skip_remote: bool,
) -> None:
    table = Table(title="Run Summary", show_header=True, header_style="bold")
    table.add_column("Item")
    table.add_column("Value", overflow="fold")
    table.add_row("Config", str(config))
    table.add_row("Marker", marker_key)
    table.add_row("Forward primer", marker_cfg["forward"])
    table.add_row("Reverse primer", marker_cfg["reverse"])
    table.add_row("Category", marker_cfg["category"])
    table.add_row("Organisms", str(len(organisms)))
    table.add_row("Archive", str(archive) if archive else "none")
    table.add_row("Remote", "skipped" if skip_remote else "NCBI")
    table.add_row("Output", str(out_dir))
    console.print(table)


def render_result_table(counters: Dict[str, int], paths: Dict[str, Path]) -> None:
    table = Table(title="Result Summary", show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Archive records", str(counters.get("archive_records", 0)))
    table.add_row("Remote records", str(counters.get("remote_records", 0)))
    table.add_row("With primer pair", str(counters.get("archive_amplicons", 0) + counters.get("remote_amplicons", 0)))
    table.add_row("Target organisms", str(counters.get("merged_records", 0)))
    table.add_row("Taxonomy resolved", str(counters.get("taxonomy_resolved", 0)))
    table.add_row("Taxonomy missed (dropped)", str(counters.get("taxonomy_missed", 0)))
    table.add_row("Ambiguous (dropped)", str(counters.get("ambiguous_dropped", 0)))
    table.add_row("Reverse-complemented", str(counters.get("oriented_reverse", 0)))
    table.add_row("Duplicates collapsed", str(counters.get("duplicates_collapsed", 0)))
    table.add_row("Final records", str(counters.get("final_records", 0)))
    table.add_row("Output", str(paths["species_fasta"].parent))
    table.add_row("Log", str(paths["log"]))
    console.print(table)


def resolve_support_file_path(raw_path: str, config_path: Path, label: str) -> Path:
    """
    Resolve a path named in the config file.

    Relative paths are looked up next to the config file first, then in the
    working directory.
    """
    path = Path(os.path.expandvars(os.path.expanduser(raw_path)))
    search_dirs = [None] if path.is_absolute() else [config_path.parent, Path.cwd()]
    tried: List[str] = []
    for base in search_dirs:
        candidate = path if base is None else base / path
        if candidate.exists():
            return candidate
        tried.append(str(candidate))
    raise typer.BadParameter(f"{label} not found. Tried: {', '.join(tried)}")


def normalize_primer(value: object, marker_key: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise typer.BadParameter(f"markers.{marker_key}.{field_name} must be a non-empty string.")
    primer = value.strip().upper().replace("U", "T")
    invalid = sorted({ch for ch in primer if ch not in PRIMER_BASES})
    if invalid:
        raise typer.BadParameter(
            f"markers.{marker_key}.{field_name} contains unsupported bases: {''.join(invalid)}"
        )
    return primer


def as_str_list(value: object, name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise typer.BadParameter(f"{name} must be a string or list of strings.")


def normalize_marker_map(markers_cfg: Dict) -> Dict[str, Dict]:
    marker_map: Dict[str, Dict] = {}
    for key, cfg in markers_cfg.items():
        if not isinstance(cfg, dict):
            raise typer.BadParameter(f"markers.{key} must be a table (dict).")
        category = cfg.get("category")
        if not isinstance(category, str) or not category.strip():
            raise typer.BadParameter(f"markers.{key}.category must be a non-empty string.")
        filters = cfg.get("filters") or {}
        if not isinstance(filters, dict):
            raise typer.BadParameter(f"markers.{key}.filters must be a table (dict).")
        for path_key in ("archive", "manual_edits"):
            value = cfg.get(path_key)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise typer.BadParameter(f"markers.{key}.{path_key} must be a non-empty string path.")
        marker_map[key] = {
            "forward": normalize_primer(cfg.get("forward"), key, "forward"),
            "reverse": normalize_primer(cfg.get("reverse"), key, "reverse"),
            "category": category.strip(),
            "aliases": as_str_list(cfg.get("aliases"), f"markers.{key}.aliases"),
            "phrases": as_str_list(cfg.get("phrases"), f"markers.{key}.phrases"),
            "terms": as_str_list(cfg.get("terms"), f"markers.{key}.terms"),
            "archive": cfg.get("archive"),
            "manual_edits": cfg.get("manual_edits"),
            "filters": filters,
        }
    return marker_map


def load_config(path: Path) -> Dict:
    if not path.exists():
        raise typer.BadParameter(f"Config file not found: {path}")
    with path.open("rb") as f:
        data = tomllib.load(f)

    markers_section = data.get("markers")
    if not isinstance(markers_section, dict) or not markers_section:
        raise typer.BadParameter("Missing [markers] section in config.")
    data["markers"] = normalize_marker_map(markers_section)

    ncbi = data.get("ncbi") or {}
    if not isinstance(ncbi, dict):
        raise typer.BadParameter("[ncbi] must be a table (dict).")
    if "per_query" in ncbi:
        try:
            ncbi["per_query"] = int(ncbi["per_query"])
        except (TypeError, ValueError) as exc:
            raise typer.BadParameter("ncbi.per_query must be an integer.") from exc
        if ncbi["per_query"] < 1:
            raise typer.BadParameter("ncbi.per_query must be >= 1.")
    data["ncbi"] = ncbi

    taxonomy_cfg = data.get("taxonomy") or {}
    if not isinstance(taxonomy_cfg, dict):
        raise typer.BadParameter("[taxonomy] must be a table (dict).")
    overrides = taxonomy_cfg.get("overrides") or {}
    if not isinstance(overrides, dict):
        raise typer.BadParameter("[taxonomy.overrides] must be a table (dict).")
    normalized_overrides: Dict[str, int] = {}
    for accession, taxid in overrides.items():
        try:
            normalized_overrides[str(accession).strip()] = int(taxid)
        except (TypeError, ValueError) as exc:
            raise typer.BadParameter(f"taxonomy.overrides.{accession} must be an integer taxid.") from exc
    taxonomy_cfg["overrides"] = normalized_overrides
    taxonomy_cfg["remote_fallback"] = bool(taxonomy_cfg.get("remote_fallback", True))
    data["taxonomy"] = taxonomy_cfg

    for section in ("organisms", "output"):
        value = data.get(section) or {}
        if not isinstance(value, dict):
            raise typer.BadParameter(f"[{section}] must be a table (dict).")
        data[section] = value

    return data


def resolve_marker_key(value: str, marker_map: Dict[str, Dict]) -> str:
    """Match a marker by key or alias, exactly first, then by unique prefix."""
    wanted = value.strip().lower()
    names = {key: [key.lower()] + [a.lower() for a in cfg.get("aliases", [])] for key, cfg in marker_map.items()}

    for matches in (
        [key for key, labels in names.items() if wanted in labels],
        [key for key, labels in names.items() if any(label.startswith(wanted) for label in labels)],
    ):
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise typer.BadParameter(f"Marker '{value}' is ambiguous: {', '.join(sorted(matches))}")

    known = ", ".join(sorted(marker_map))
    raise typer.BadParameter(f"Marker '{value}' not found in config (known: {known}).")


def setup_entrez(ncbi_cfg: Dict) -> None:
    email = ncbi_cfg.get("email") or os.environ.get("NCBI_EMAIL")
    if not email:
        console.print("[yellow]WARNING:[/yellow] NCBI email is not set. Set ncbi.email or NCBI_EMAIL.")
    Entrez.email = email or ""
    Entrez.tool = "refdbbuilder"
    api_key = ncbi_cfg.get("api_key") or os.environ.get("NCBI_API_KEY")
    if api_key:
        Entrez.api_key = api_key


def default_delay(ncbi_cfg: Dict) -> float:
    # NCBI allows 3 requests/s without an API key and 10 with one
    if ncbi_cfg.get("delay_sec") is not None:
        return float(ncbi_cfg["delay_sec"])
    requests_per_sec = 10 if getattr(Entrez, "api_key", None) else 3
    return round(1.0 / requests_per_sec + 0.01, 2)


def is_raw_term(value: str) -> bool:
    return "[" in value and "]" in value


def build_marker_query(marker_cfg: Dict) -> str:
    phrase_terms: List[str] = list(marker_cfg.get("terms", []))
    for phrase in marker_cfg.get("phrases", []):
        if is_raw_term(phrase):
            phrase_terms.append(phrase)
        else:
            phrase_escaped = phrase.replace('"', '\\"')
            phrase_terms.append(f'"{phrase_escaped}"[All Fields]')
    if not phrase_terms:
        raise typer.BadParameter("Marker defines no phrases or terms for the remote query.")
    if len(phrase_terms) == 1:
        return phrase_terms[0]
    return "(" + " OR ".join(f"({t})" for t in phrase_terms) + ")"


def build_filter_terms(filters: Dict) -> List[str]:
    terms: List[str] = []
    if not filters:
        return terms

    length_min = filters.get("sequence_length_min")
    length_max = filters.get("sequence_length_max")
    if length_min is not None or length_max is not None:
        try:
            lmin = int(length_min) if length_min is not None else 0
            lmax = int(length_max) if length_max is not None else 1000000000
        except (TypeError, ValueError) as exc:
            raise typer.BadParameter("filters.sequence_length_min/max must be integers.") from exc
        terms.append(f"{lmin}[SLEN] : {lmax}[SLEN]")

    exclude_keywords = as_str_list(filters.get("all_fields_exclude"), "filters.all_fields_exclude")
    if exclude_keywords:
        exc = [f'"{k}"[All Fields]' for k in exclude_keywords]
        terms.append("NOT (" + " OR ".join(exc) + ")")

    for term in as_str_list(filters.get("raw"), "filters.raw"):
        terms.append(term)
    return terms


def build_query(organism: str, marker_query: str, filters: Dict) -> str:
    organism_escaped = organism.replace('"', '\\"')
    parts = [f'"{organism_escaped}"[Organism]', marker_query]
    parts.extend(build_filter_terms(filters))
    return " AND ".join(f"({p})" for p in parts)


def parse_fasta(handle: TextIO, source: str) -> List[SequenceRecord]:
    records: List[SequenceRecord] = []
    for record in SeqIO.parse(handle, "fasta"):
        description = str(record.description).strip()
        seq = str(record.seq).upper().replace("U", "T")
        records.append(SequenceRecord(id=description, seq=seq, description=description, source=source))
    return records


def read_archive(path: Path) -> List[SequenceRecord]:
    with path.open("r", encoding="utf-8") as in_f:
        return parse_fasta(in_f, SOURCE_ARCHIVE)


def _read_text(handle) -> str:
    data = handle.read()
    handle.close()
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="ignore")
    return data


class NcbiSource:
    """
    Entrez-backed remote collaborator.

    Calls are blocking and not retried: any network error propagates and ends
    the run.
    """

    def __init__(self, ncbi_cfg: Dict):
        self.db = ncbi_cfg.get("db", "nucleotide")
        self.per_query = int(ncbi_cfg.get("per_query", 200))
        self.delay_sec = default_delay(ncbi_cfg)

    def search(self, query: str) -> List[SequenceRecord]:
        handle = Entrez.esearch(db=self.db, term=query, retmax=0, usehistory="y")
        record = Entrez.read(handle)
        handle.close()
        count = int(record.get("Count", 0))
        if count == 0:
            return []
        webenv = record.get("WebEnv")
        query_key = record.get("QueryKey")

        records: List[SequenceRecord] = []
        for start in range(0, count, self.per_query):
            fetch_handle = Entrez.efetch(
                db=self.db,
                rettype="fasta",
                retmode="text",
                retstart=start,
                retmax=self.per_query,
                webenv=webenv,
                query_key=query_key,
            )
            records.extend(parse_fasta(fetch_handle, SOURCE_GENBANK))
            fetch_handle.close()
            time.sleep(self.delay_sec)
        return records

    def fetch_accessions(self, accessions: Sequence[str]) -> List[SequenceRecord]:
        if not accessions:
            return []
        records: List[SequenceRecord] = []
        for start in range(0, len(accessions), self.per_query):
            chunk = accessions[start:start + self.per_query]
            fetch_handle = Entrez.efetch(db=self.db, rettype="fasta", retmode="text", id=",".join(chunk))
            records.extend(parse_fasta(fetch_handle, SOURCE_MANUAL))
            fetch_handle.close()
            time.sleep(self.delay_sec)
        return records

    def fetch_taxid(self, accession: str) -> Optional[int]:
        if not accession.strip():
            return None
        handle = Entrez.esearch(db=self.db, term=accession, retmax=1)
        record = Entrez.read(handle)
        handle.close()
        ids = record.get("IdList", [])
        time.sleep(self.delay_sec)
        if not ids:
            return None
        text = _read_text(Entrez.efetch(db=self.db, id=ids[0], rettype="gb", retmode="xml"))
        time.sleep(self.delay_sec)
        match = TAXON_XREF_RE.search(text)
        if not match:
            return None
        return int(match.group(1))


def retrieve_remote(
    remote: NcbiSource,
    organisms: List[str],
    marker_cfg: Dict,
    progress: Optional[Progress] = None,
    task_id: Optional[int] = None,
) -> List[SequenceRecord]:
    marker_query = build_marker_query(marker_cfg)
    seen: Set[str] = set()
    records: List[SequenceRecord] = []
    for organism in organisms:
        query = build_query(organism, marker_query, marker_cfg.get("filters") or {})
        for record in remote.search(query):
            if record.id in seen:
                continue
            seen.add(record.id)
            records.append(record)
        if progress is not None and task_id is not None:
            progress.update(task_id, advance=1)
    return records


def _table_delimiter(path: Path) -> str:
    return "\t" if path.suffix.lower() in {".tsv", ".txt", ".tab"} else ","


def load_organism_list(path: Path, category: str) -> List[str]:
    with path.open("r", newline="", encoding="utf-8") as in_f:
        reader = csv.DictReader(in_f, delimiter=_table_delimiter(path))
        if reader.fieldnames is None:
            raise typer.BadParameter(f"Organism list has no header: {path}")
        headers = {h.strip(): h for h in reader.fieldnames if h}
        cat_col = headers.get("category")
        name_col = headers.get("scientific_name")
        if not cat_col or not name_col:
            raise typer.BadParameter("Organism list must contain headers: category, scientific_name")

        names: List[str] = []
        for row in reader:
            if str(row.get(cat_col) or "").strip() != category:
                continue
            name = str(row.get(name_col) or "").strip()
            if name and name not in names:
                names.append(name)
    return names


def load_manual_edits(path: Path) -> ManualEdits:
    edits = ManualEdits()
    with path.open("r", newline="", encoding="utf-8") as in_f:
        reader = csv.DictReader(in_f, delimiter=_table_delimiter(path))
        if reader.fieldnames is None:
            raise typer.BadParameter(f"Manual edit list has no header: {path}")
        missing = {"type", "accession"} - {h.strip() for h in reader.fieldnames if h}
        if missing:
            raise typer.BadParameter(f"Manual edit list is missing columns: {', '.join(sorted(missing))}")

        for line_no, raw in enumerate(reader, start=2):
            row = {str(k).strip(): str(v or "").strip() for k, v in raw.items() if k}
            edit_type = row.get("type", "").lower()
            accession = row.get("accession", "")
            if not edit_type and not accession:
                continue
            if edit_type not in EDIT_TYPES:
                raise typer.BadParameter(f"{path}:{line_no}: type must be one of {', '.join(EDIT_TYPES)}.")
            if not accession:
                raise typer.BadParameter(f"{path}:{line_no}: accession is required.")

            if edit_type == "add":
                sequence = row.get("sequence", "").upper().replace("U", "T")
                edits.add.append((accession, sequence))
            elif edit_type == "omit":
                edits.omit.add(accession)
            else:
                rank = row.get("rank", "").lower()
                rank = RANK_ALIASES.get(rank, rank)
                if rank not in RANKS:
                    raise typer.BadParameter(f"{path}:{line_no}: rank must be one of {', '.join(RANKS)}.")
                edits.rename.append((accession, rank, row.get("name", "")))
    return edits


def filter_organisms(records: Iterable[SequenceRecord], organisms: Sequence[str]) -> List[SequenceRecord]:
    kept: List[SequenceRecord] = []
    for record in records:
        text = record.description or record.id
        if any(name in text for name in organisms):
            kept.append(record)
    return kept


def normalize_accession(text: str) -> str:
    tokens = LEADING_MARKERS_RE.sub("", text).split(maxsplit=1)
    if not tokens:
        return ""
    token = tokens[0]
    if "|" in token:
        parts = [p for p in token.split("|") if p]
        accession = next((p for p in parts if ACCESSION_RE.match(p)), None)
        token = accession or (parts[0] if parts else token)
    return token


def is_unverified(record: SequenceRecord) -> bool:
    return UNVERIFIED_TAG in record.description


def merge_sources(
    archive: Iterable[SequenceRecord],
    remote: Iterable[SequenceRecord],
) -> Tuple[List[SequenceRecord], int]:
    merged = list(archive)
    unverified = 0
    for record in remote:
        if is_unverified(record):
            unverified += 1
            continue
        merged.append(record)
    return merged, unverified


def _matches_accession(accession: str, targets: Set[str]) -> bool:
    return accession in targets or strip_version(accession) in targets


def has_ambiguity(seq: str) -> bool:
    return not set(seq) <= CLEAN_BASES


def drop_ambiguous(entries: Iterable[ReferenceEntry]) -> Tuple[List[ReferenceEntry], List[ReferenceEntry]]:
    kept: List[ReferenceEntry] = []
    dropped: List[ReferenceEntry] = []
    for entry in entries:
        if has_ambiguity(entry.record.seq):
            dropped.append(entry)
        else:
            kept.append(entry)
    return kept, dropped


def ambiguity_report(dropped: Iterable[ReferenceEntry], kept: Iterable[ReferenceEntry]) -> List[Dict[str, str]]:
    remaining: Dict[Tuple, int] = {}
    for entry in kept:
        lineage = entry.taxonomy.lineage
        remaining[lineage] = remaining.get(lineage, 0) + 1
    rows: List[Dict[str, str]] = []
    for entry in dropped:
        bad = sorted({ch for ch in entry.record.seq if ch not in CLEAN_BASES})
        rows.append(
            {
                "accession": entry.accession,
                "source": entry.record.source,
                "taxon": entry.taxonomy.lowest_name or "",
                "lineage": entry.taxonomy.lineage_string,
                "ambiguous_chars": "".join(bad).replace(" ", "<space>"),
                "remaining_sequences": str(remaining.get(entry.taxonomy.lineage, 0)),
            }
        )
    return rows


def natural_key(accession: str) -> List:
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", accession)]


def entry_preference(entry: ReferenceEntry) -> Tuple:
    return SOURCE_PRIORITY.get(entry.record.source, len(SOURCE_PRIORITY)), natural_key(entry.accession)


def deduplicate(entries: Iterable[ReferenceEntry]) -> Tuple[List[ReferenceEntry], List[DuplicateGroup]]:
    groups: Dict[Tuple, List[ReferenceEntry]] = {}
    for entry in entries:
        key = (entry.taxonomy.lineage, entry.record.seq)
        groups.setdefault(key, []).append(entry)

    kept: List[ReferenceEntry] = []
    collapsed: List[DuplicateGroup] = []
    for members in groups.values():
        best = min(members, key=entry_preference)
        kept.append(best)
        if len(members) > 1:
            collapsed.append(DuplicateGroup(kept=best, dropped=tuple(m for m in members if m is not best)))
    return kept, collapsed


def apply_manual_additions(
    edits: ManualEdits,
    fetch_accessions: Optional[Callable[[Sequence[str]], List[SequenceRecord]]],
) -> List[SequenceRecord]:
    added: List[SequenceRecord] = []
    to_fetch: List[str] = []
    for accession, sequence in edits.add:
        if sequence:
            added.append(SequenceRecord(id=accession, seq=sequence, description=accession, source=SOURCE_MANUAL))
        else:
            to_fetch.append(accession)
    if to_fetch:
        if fetch_accessions is None:
            raise typer.BadParameter(
                f"Manual additions without sequences need remote access: {', '.join(to_fetch)}"
            )
        for record in fetch_accessions(to_fetch):
            added.append(replace(record, source=SOURCE_MANUAL))
    return added


def run_pipeline(
    marker_cfg: Dict,
    archive_records: Sequence[SequenceRecord],
    remote_records: Sequence[SequenceRecord],
    organisms: Sequence[str],
    resolver: TaxonomyResolver,
    edits: Optional[ManualEdits] = None,
    fetch_accessions: Optional[Callable[[Sequence[str]], List[SequenceRecord]]] = None,
    logger: Optional[logging.Logger] = None,
) -> PipelineResult:
    log = logger or module_logger
    edits = edits or ManualEdits()
    forward = marker_cfg["forward"]
    reverse = marker_cfg["reverse"]
    counters: Dict[str, int] = {
        "archive_records": len(archive_records),
        "remote_records": len(remote_records),
    }

    archive_amp = extract_amplicons(archive_records, forward, reverse)
    remote_amp = extract_amplicons(remote_records, forward, reverse)
    counters["archive_amplicons"] = len(archive_amp)
    counters["remote_amplicons"] = len(remote_amp)
    log.info(f"# primer pair: archive={len(archive_amp)}/{len(archive_records)} remote={len(remote_amp)}/{len(remote_records)}")

    archive_hits = filter_organisms(archive_amp, organisms)
    remote_hits = filter_organisms(remote_amp, organisms)
    counters["archive_organism_hits"] = len(archive_hits)
    counters["remote_organism_hits"] = len(remote_hits)
    log.info(f"# organism filter: archive={len(archive_hits)} remote={len(remote_hits)} organisms={len(organisms)}")

    archive_hits = [replace(r, id=normalize_accession(r.id)) for r in archive_hits]
    remote_hits = [replace(r, id=normalize_accession(r.id)) for r in remote_hits]

    merged, unverified = merge_sources(archive_hits, remote_hits)
    counters["unverified_dropped"] = unverified
    log.info(f"# merged: {len(merged)} unverified_dropped={unverified}")

    if edits.omit:
        before = len(merged)
        merged = [r for r in merged if not _matches_accession(r.id, edits.omit)]
        counters["omitted"] = before - len(merged)
        log.info(f"# manual omit: {counters['omitted']}")
    if edits.add:
        added_raw = apply_manual_additions(edits, fetch_accessions)
        added = [replace(r, id=normalize_accession(r.id)) for r in extract_amplicons(added_raw, forward, reverse)]
        missing = sorted({normalize_accession(r.id) for r in added_raw} - {r.id for r in added})
        for accession in missing:
            log.info(f"# manual add without primer pair (skipped): {accession}")
        merged.extend(added)
        counters["added"] = len(added)
        log.info(f"# manual add: {len(added)}/{len(edits.add)}")
    blank = [r for r in merged if not r.id]
    if blank:
        merged = [r for r in merged if r.id]
        for record in blank:
            log.info(f"# blank accession (dropped): source={record.source} length={len(record.seq)}")
    counters["blank_accession_dropped"] = len(blank)
    counters["merged_records"] = len(merged)

    resolved, misses = resolver.resolve(r.id for r in merged)
    for accession, rank, name in edits.rename:
        for key in [k for k in resolved if _matches_accession(k, {accession})]:
            resolved[key] = resolved[key].with_rank(rank, name)
            log.info(f"# manual rename: {key} {rank} -> {name or '(cleared)'}")
    entries = [ReferenceEntry(record=r, taxonomy=resolved[r.id]) for r in merged if r.id in resolved]
    counters["taxonomy_resolved"] = len(entries)
    counters["taxonomy_missed"] = len(merged) - len(entries)
    for accession in misses:
        log.info(f"# taxonomy miss (dropped): {accession}")

    entries, ambiguous = drop_ambiguous(entries)
    counters["ambiguous_dropped"] = len(ambiguous)
    log.info(f"# ambiguous dropped: {len(ambiguous)}")

    oriented, orientation_counts = orient_records([e.record for e in entries], forward, reverse)
    entries = [replace(e, record=r) for e, r in zip(entries, oriented)]
    counters["oriented_forward"] = orientation_counts["forward"]
    counters["oriented_reverse"] = orientation_counts["reverse"]
    log.info(f"# orientation: forward={orientation_counts['forward']} reverse={orientation_counts['reverse']}")

    entries, groups = deduplicate(entries)
    counters["duplicates_collapsed"] = sum(len(g.dropped) for g in groups)
    counters["final_records"] = len(entries)
    log.info(f"# dedup: groups={len(groups)} collapsed={counters['duplicates_collapsed']} final={len(entries)}")

    return PipelineResult(
        entries=entries,
        ambiguous=ambiguous,
        duplicate_groups=groups,
        taxonomy_misses=misses,
        counters=counters,
    )


def unique_feature_ids(accessions: Iterable[str]) -> List[str]:
    accessions = list(accessions)
    taken: Set[str] = set(accessions)
    seen: Set[str] = set()
    suffixes: Dict[str, int] = {}
    ids: List[str] = []
    for accession in accessions:
        if accession not in seen:
            seen.add(accession)
            ids.append(accession)
            continue
        # never hand out an id that appears anywhere in the input
        n = suffixes.get(accession, 0)
        candidate = accession
        while candidate in taken:
            n += 1
            candidate = f"{accession}_{n}"
        suffixes[accession] = n
        taken.add(candidate)
        ids.append(candidate)
    return ids


def write_atomic(path: Path, write: Callable[[TextIO], None]) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with tmp_path.open("w", encoding="utf-8", newline="") as out_f:
            write(out_f)
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def write_fasta(path: Path, rows: Iterable[Tuple[str, str]]) -> None:
    def write(out_f: TextIO) -> None:
        for header, seq in rows:
            out_f.write(f">{header}\n")
            out_f.write(f"{seq}\n")

    write_atomic(path, write)


def write_csv(path: Path, fieldnames: List[str], rows: Iterable[Dict[str, str]], delimiter: str = ",") -> None:
    def write(out_f: TextIO) -> None:
        writer = csv.DictWriter(out_f, fieldnames=fieldnames, delimiter=delimiter, lineterminator="\n")
        writer.writeheader()
        writer.writerows(rows)

    write_atomic(path, write)


def export_reference_db(entries: Sequence[ReferenceEntry], paths: Dict[str, Path]) -> None:
    write_fasta(
        paths["species_fasta"],
        ((f"{e.accession} {e.taxonomy.lowest_name}", e.record.seq) for e in entries),
    )
    write_fasta(
        paths["taxonomy_fasta"],
        ((e.taxonomy.lineage_string, e.record.seq) for e in entries),
    )
    feature_ids = unique_feature_ids(e.accession for e in entries)
    write_fasta(
        paths["qiime_fasta"],
        ((fid, e.record.seq) for fid, e in zip(feature_ids, entries)),
    )
    write_csv(
        paths["qiime_taxonomy"],
        ["Feature ID", "Taxon"],
        ({"Feature ID": fid, "Taxon": e.taxonomy.lineage_string} for fid, e in zip(feature_ids, entries)),
        delimiter="\t",
    )


def write_duplicate_report_csv(path: Path, groups: Sequence[DuplicateGroup]) -> None:
    rows = []
    for group_id, group in enumerate(groups, start=1):
        rows.append(
            {
                "group_id": str(group_id),
                "taxon": group.kept.taxonomy.lowest_name or "",
                "lineage": group.kept.taxonomy.lineage_string,
                "sequence_length": str(len(group.kept.record.seq)),
                "kept_accession": group.kept.accession,
                "kept_source": group.kept.record.source,
                "dropped_accessions": ";".join(e.accession for e in group.dropped),
                "dropped_sources": ";".join(e.record.source for e in group.dropped),
            }
        )
    write_csv(
        path,
        [
            "group_id",
            "taxon",
            "lineage",
            "sequence_length",
            "kept_accession",
            "kept_source",
            "dropped_accessions",
            "dropped_sources",
        ],
        rows,
    )


def write_ambiguity_report_csv(path: Path, rows: Sequence[Dict[str, str]]) -> None:
    write_csv(
        path,
        ["accession", "source", "taxon", "lineage", "ambiguous_chars", "remaining_sequences"],
        rows,
    )


def resolve_output_dir(out: Optional[Path], output_cfg: Dict, config_path: Path) -> Path:
    if out:
        out_dir = out
    elif os.environ.get(OUTPUT_DIR_ENV):
        out_dir = Path(os.environ[OUTPUT_DIR_ENV])
    elif output_cfg.get("dir"):
        out_dir = Path(os.path.expandvars(os.path.expanduser(str(output_cfg["dir"]))))
        if not out_dir.is_absolute():
            out_dir = config_path.parent / out_dir
    else:
        out_dir = Path("Results") / "refdb" / datetime.now().strftime("%Y%m%d")
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir


def build_output_paths(out_dir: Path, marker_key: str, output_prefix: str = "") -> Dict[str, Path]:
    prefix = output_prefix
    if prefix and not prefix.endswith("_"):
        prefix = prefix + "_"
    stem = f"{prefix}{marker_key}"
    return {
        "species_fasta": out_dir / f"{stem}_species.fasta",
        "taxonomy_fasta": out_dir / f"{stem}_taxonomy.fasta",
        "qiime_fasta": out_dir / f"{stem}_qiime.fasta",
        "qiime_taxonomy": out_dir / f"{stem}_qiime_taxonomy.tsv",
        "ambiguous_report": out_dir / f"{stem}.ambiguous.csv",
        "duplicate_report": out_dir / f"{stem}.duplicates.csv",
        "log": out_dir / f"{stem}.log",
    }


@contextmanager
def run_log(log_path: Path, marker_key: str) -> Iterator[logging.Logger]:
    """
    Per-build log written next to the exports.

    One logger per marker; handlers from an earlier build in the same
    process are replaced so each log file only holds its own run.
    """
    logger = logging.getLogger(f"{__name__}.build.{marker_key}")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    try:
        yield logger
    finally:
        logger.removeHandler(handler)
        handler.close()


@app.command("list-markers")
def list_markers(
    config: Path = typer.Option(..., "--config", "-c", help="Path to TOML config file."),
) -> None:
    """
    List marker IDs, aliases and primers from the config.
    """
    cfg = load_config(config)
    table = Table(title="Markers", show_header=True, header_style="bold")
    table.add_column("Marker ID")
    table.add_column("Aliases")
    table.add_column("Category")
    table.add_column("Forward")
    table.add_column("Reverse")
    for key in sorted(cfg["markers"].keys()):
        entry = cfg["markers"][key]
        aliases_text = ", ".join(entry["aliases"]) if entry["aliases"] else "-"
        table.add_row(key, aliases_text, entry["category"], entry["forward"], entry["reverse"])
    console.print(table)


@app.command()
def trim(
    config: Path = typer.Option(..., "--config", "-c", help="Path to TOML config file."),
    marker: str = typer.Option(..., "--marker", "-m", help="Marker key or prefix."),
    input_fasta: Path = typer.Option(..., "--input", "-i", help="FASTA file to trim."),
    out: Path = typer.Option(..., "--out", "-o", help="Output FASTA path."),
    orient: bool = typer.Option(False, "--orient", help="Reverse-complement reverse-strand amplicons."),
    literal_only: bool = typer.Option(
        False,
        "--literal-only",
        help="Match both primers only as written; skip the strand-aware retry.",
    ),
) -> None:
    """
    Trim every record of a FASTA file to its primer-bounded amplicon.

    Both primers are matched as written first; records that miss are
    retried on either strand unless --literal-only is given. Records without
    a primer pair are left out.
    """
    cfg = load_config(config)
    marker_key = resolve_marker_key(marker, cfg["markers"])
    marker_cfg = cfg["markers"][marker_key]
    if not input_fasta.exists():
        raise typer.BadParameter(f"--input not found: {input_fasta}")

    records = read_archive(input_fasta)
    if literal_only:
        trimmed = trim_to_primer_pair(records, marker_cfg["forward"], marker_cfg["reverse"])
    else:
        trimmed = extract_amplicons(records, marker_cfg["forward"], marker_cfg["reverse"])
    counts = None
    if orient:
        try:
            trimmed, counts = orient_records(trimmed, marker_cfg["forward"], marker_cfg["reverse"])
        except OrientationError as exc:
            console.print(f"[red]ERROR:[/red] {exc}")
            raise typer.Exit(code=1) from exc

    out.parent.mkdir(parents=True, exist_ok=True)
    write_fasta(out, ((r.id, r.seq) for r in trimmed))
    console.print(f"{marker_key}: kept {len(trimmed)}/{len(records)} records -> {out}")
    if counts:
        console.print(f"orientation: forward={counts['forward']} reverse={counts['reverse']}")


@app.command()
def build(
    config: Path = typer.Option(..., "--config", "-c", help="Path to TOML config file."),
    marker: str = typer.Option(..., "--marker", "-m", help="Marker key or prefix (12SV5, trnL)."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help=f"Output directory (or set {OUTPUT_DIR_ENV})."),
    archive: Optional[Path] = typer.Option(None, "--archive", help="Local FASTA archive (overrides config)."),
    skip_remote: bool = typer.Option(False, "--skip-remote", help="Do not query NCBI."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print remote queries and exit."),
    output_prefix: Optional[str] = typer.Option(
        None,
        "--output-prefix",
        help="Prefix added to output filenames (default: [output].prefix).",
    ),
):
    """
    Build a reference database for one marker.

    Examples:
      refdbbuilder build -c configs/refdb.toml -m 12SV5
      refdbbuilder build -c configs/refdb.toml -m trnl --out Results/refdb/trnL
      refdbbuilder build -c configs/refdb.toml -m 12s --skip-remote --archive archive.fasta
    """
    cfg = load_config(config)
    ncbi_cfg = cfg["ncbi"]
    taxonomy_cfg = cfg["taxonomy"]
    output_cfg = cfg["output"]
    organisms_cfg = cfg["organisms"]

    marker_key = resolve_marker_key(marker, cfg["markers"])
    marker_cfg = cfg["markers"][marker_key]

    organisms_file = organisms_cfg.get("file")
    if not organisms_file:
        raise typer.BadParameter("[organisms].file is not set in config.")
    organisms_path = resolve_support_file_path(str(organisms_file), config, "Organism list")
    organisms = load_organism_list(organisms_path, marker_cfg["category"])
    if not organisms:
        raise typer.BadParameter(
            f"No organisms with category '{marker_cfg['category']}' in {organisms_path}."
        )

    archive_path = archive
    if archive_path is None and marker_cfg.get("archive"):
        archive_path = resolve_support_file_path(marker_cfg["archive"], config, "Sequence archive")
    if archive_path is not None and not archive_path.exists():
        raise typer.BadParameter(f"--archive not found: {archive_path}")

    edits = ManualEdits()
    edits_path = None
    if marker_cfg.get("manual_edits"):
        edits_path = resolve_support_file_path(marker_cfg["manual_edits"], config, "Manual edit list")
        edits = load_manual_edits(edits_path)

    if not taxonomy_cfg.get("db"):
        raise typer.BadParameter("[taxonomy].db is not set in config.")
    taxonomy_db = resolve_support_file_path(str(taxonomy_cfg["db"]), config, "Taxonomy store")

    if output_prefix is None:
        output_prefix = str(output_cfg.get("prefix", "refdb"))
    output_prefix = output_prefix.strip()

    setup_entrez(ncbi_cfg)
    print_header()

    if dry_run:
        marker_query = build_marker_query(marker_cfg)
        for organism in organisms:
            console.print(build_query(organism, marker_query, marker_cfg.get("filters") or {}))
        return

    out_dir = resolve_output_dir(out, output_cfg, config)
    paths = build_output_paths(out_dir, marker_key, output_prefix)
    render_run_table(config, marker_key, marker_cfg, organisms, archive_path, out_dir, skip_remote)

    remote = None if skip_remote else NcbiSource(ncbi_cfg)
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        disable=not console.is_terminal,
    )

    with run_log(paths["log"], marker_key) as run_logger:
        run_logger.info(f"# started: {datetime.now().isoformat()}")
        run_logger.info(f"# config: {config}")
        run_logger.info(f"# marker: {marker_key}")
        run_logger.info(f"# forward: {marker_cfg['forward']}")
        run_logger.info(f"# reverse: {marker_cfg['reverse']}")
        run_logger.info(f"# organisms: {organisms_path} category={marker_cfg['category']} n={len(organisms)}")
        run_logger.info(f"# archive: {archive_path}" if archive_path else "# archive: none")
        run_logger.info(f"# manual_edits: {edits_path}" if edits_path else "# manual_edits: none")
        run_logger.info(f"# taxonomy_db: {taxonomy_db}")
        run_logger.info(f"# remote: {'skipped' if skip_remote else ncbi_cfg.get('db', 'nucleotide')}")

        archive_records = read_archive(archive_path) if archive_path else []
        remote_records: List[SequenceRecord] = []
        if remote is not None:
            with progress:
                task_id = progress.add_task("NCBI organisms", total=len(organisms))
                remote_records = retrieve_remote(remote, organisms, marker_cfg, progress, task_id)
        run_logger.info(f"# retrieved: archive={len(archive_records)} remote={len(remote_records)}")

        fallbacks = []
        if remote is not None and taxonomy_cfg["remote_fallback"]:
            fallbacks.append(remote.fetch_taxid)
        with AccessionTaxaStore(taxonomy_db) as store:
            resolver = TaxonomyResolver(store, fallbacks=fallbacks, overrides=taxonomy_cfg["overrides"])
            try:
                result = run_pipeline(
                    marker_cfg,
                    archive_records,
                    remote_records,
                    organisms,
                    resolver,
                    edits=edits,
                    fetch_accessions=remote.fetch_accessions if remote is not None else None,
                    logger=run_logger,
                )
            except OrientationError as exc:
                run_logger.info(f"# orientation failure: {', '.join(exc.record_ids)}")
                console.print(f"[red]ERROR:[/red] {exc}")
                raise typer.Exit(code=1) from exc

        export_reference_db(result.entries, paths)
        ambiguous_rows = ambiguity_report(result.ambiguous, result.entries)
        write_ambiguity_report_csv(paths["ambiguous_report"], ambiguous_rows)
        write_duplicate_report_csv(paths["duplicate_report"], result.duplicate_groups)

        for row in ambiguous_rows:
            run_logger.info(
                f"# ambiguous: {row['accession']} {row['taxon']} remaining={row['remaining_sequences']}"
            )
        for key, value in result.counters.items():
            run_logger.info(f"# {key}: {value}")
        for name, path in paths.items():
            run_logger.info(f"# output {name}: {path}")
        run_logger.info(f"# finished: {datetime.now().isoformat()}")

    render_result_table(result.counters, paths)
    if result.taxonomy_misses:
        console.print(
            f"[yellow]WARNING:[/yellow] {len(result.taxonomy_misses)} accession(s) had no taxonomy and were dropped. "
            "See .log for details."
        )
    orphaned = sorted({row["taxon"] for row in ambiguous_rows if row["remaining_sequences"] == "0"})
    if orphaned:
        console.print(
            "[yellow]WARNING:[/yellow] taxa left without sequences after ambiguity filtering: "
            + ", ".join(orphaned)
        )
    elif ambiguous_rows:
        console.print(
            f"[yellow]WARNING:[/yellow] {len(ambiguous_rows)} sequence(s) with ambiguity codes dropped. "
            f"See {paths['ambiguous_report']}."
        )


if __name__ == "__main__":
    app()
