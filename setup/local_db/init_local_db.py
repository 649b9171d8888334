from __future__ import annotations

import argparse
import sys
from pathlib import Path

APP_ROOT = Path(__file__).resolve().parents[2] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from armory_app.infrastructure.local_db_bootstrap import (  # noqa: E402
    SCHEMA_DIR,
    LocalDbBootstrapError,
    initialize_local_db,
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a local SQLite DB with the armory policy rule table.")
    parser.add_argument(
        "--db-path",
        default=str(Path(__file__).resolve().parent / "armory_local.db"),
        help="Output SQLite database path.",
    )
    parser.add_argument(
        "--schema-dir",
        default=str(SCHEMA_DIR),
        help="Folder of schema SQL files, applied in name order.",
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete the existing database file before creating.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        result = initialize_local_db(Path(args.db_path), reset=args.reset, schema_dir=Path(args.schema_dir))
    except LocalDbBootstrapError as exc:
        print(f"Local policy DB bootstrap failed: {exc}", file=sys.stderr)
        return 1
    print(f"Local database ready: {result.db_path}")
    print(f"Schema scripts applied: {result.scripts_applied}")
    print(f"Policy rules stored: {result.rule_count}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
