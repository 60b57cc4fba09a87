#!/usr/bin/env python3
"""
Build the accession -> taxon lookup store used by refdbbuilder.

Inputs are the NCBI taxdump (names.dmp, nodes.dmp) and one or more
*.accession2taxid tables (plain or gzipped), e.g. nucl_gb.accession2taxid.gz.

Output:
  - SQLite store (tables: accessionTaxa, nodes, names)
"""

from __future__ import annotations

import argparse
import sqlite3
from pathlib import Path

from taxonomy import build_accession_table, build_store, build_taxonomy_tables


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build the accessionTaxa SQLite store from NCBI taxdump and accession2taxid files"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_tax = sub.add_parser("taxonomy", help="(Re)build the names and nodes tables")
    p_tax.add_argument("--names-dmp", type=Path, required=True, help="Path to names.dmp")
    p_tax.add_argument("--nodes-dmp", type=Path, required=True, help="Path to nodes.dmp")
    p_tax.add_argument("--out-db", type=Path, required=True, help="SQLite store path")

    p_acc = sub.add_parser("accessions", help="(Re)build the accessionTaxa table")
    p_acc.add_argument(
        "--accession2taxid",
        type=Path,
        nargs="+",
        required=True,
        help="One or more *.accession2taxid[.gz] files",
    )
    p_acc.add_argument("--out-db", type=Path, required=True, help="SQLite store path")

    p_all = sub.add_parser("all", help="Build a fresh store with all tables")
    p_all.add_argument("--names-dmp", type=Path, required=True, help="Path to names.dmp")
    p_all.add_argument("--nodes-dmp", type=Path, required=True, help="Path to nodes.dmp")
    p_all.add_argument(
        "--accession2taxid",
        type=Path,
        nargs="+",
        required=True,
        help="One or more *.accession2taxid[.gz] files",
    )
    p_all.add_argument("--out-db", type=Path, required=True, help="SQLite store path")

    return parser.parse_args()


def main() -> int:
    args = parse_args()

    if args.command == "all":
        counts = build_store(args.names_dmp, args.nodes_dmp, args.accession2taxid, args.out_db)
        print(f"inserted {counts['names']} names, {counts['nodes']} nodes -> {args.out_db}")
        print(f"inserted {counts['accessions']} accessions -> {args.out_db}")
        return 0

    args.out_db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(args.out_db))
    try:
        if args.command == "taxonomy":
            names, nodes = build_taxonomy_tables(conn, args.names_dmp, args.nodes_dmp)
            print(f"inserted {names} names, {nodes} nodes -> {args.out_db}")
            return 0

        if args.command == "accessions":
            count = build_accession_table(conn, args.accession2taxid)
            print(f"inserted {count} accessions -> {args.out_db}")
            return 0
    finally:
        conn.close()

    raise RuntimeError(f"unknown command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
