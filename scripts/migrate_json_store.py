#!/usr/bin/env python3
"""Import a legacy data/database.json document into the sqlite store, or export it back."""

import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from groupsub.config import settings
from groupsub.db import DB


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Migrate the legacy JSON group/membership document into the SQLite store.",
    )
    parser.add_argument("--sqlite", default=settings.db_path, help="Target SQLite DB path")
    parser.add_argument("--json", default="./data/database.json", help="Legacy JSON document")
    parser.add_argument(
        "--export",
        action="store_true",
        help="Write the SQLite store out to --json instead of importing it",
    )
    args = parser.parse_args()

    db = DB(args.sqlite)
    db.initialize()

    if args.export:
        with open(args.json, "w", encoding="utf-8") as handle:
            json.dump(db.export_tree(), handle, indent=2, ensure_ascii=False)
        print(f"exported sqlite={args.sqlite} target={args.json}")
        return 0

    source = Path(args.json)
    if not source.exists():
        print(f"source not found: {source}")
        return 1
    with source.open("r", encoding="utf-8") as handle:
        document = json.load(handle)

    counts = db.import_tree(document)
    print(
        f"migrated groups={counts['groups']} memberships={counts['memberships']} "
        f"skipped={counts['skipped']} source={source}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
