"""
Check whether a personal backend is reachable and has the expected tables.

Prints the bootstrap SQL when the tables are missing. Nothing is written to
the backend.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studylog.client_cache import create_backend_client
from studylog.config import get_settings
from studylog.errors import BackendError
from studylog.setup_flow import (
    USER_DATABASE_SQL,
    check_schema,
    normalize_url,
    probe_connection,
)

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check a personal backend")
    parser.add_argument("url", help="Project URL or SQLAlchemy database URL")
    parser.add_argument(
        "--key",
        type=str,
        default="",
        help="Project anon key (not needed for database URLs)",
    )
    parser.add_argument(
        "--print-sql",
        action="store_true",
        help="Print the bootstrap SQL even when the tables exist",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    url = normalize_url(args.url)
    try:
        client = create_backend_client(
            url, args.key, timeout=get_settings().request_timeout_seconds
        )
    except BackendError as exc:
        logger.error("Cannot open %s: %s", url, exc.message)
        return 2

    probe = probe_connection(client)
    if not probe.ok:
        logger.error("Connection failed: %s", probe.error.message)
        return 2

    schema = check_schema(client)
    if schema.schema_missing:
        logger.warning("Tables are missing; run this SQL in the project's SQL editor:")
        print(USER_DATABASE_SQL)
        return 1
    if not schema.ok:
        logger.error("Database check failed: %s", schema.error.message)
        return 2

    logger.info("%s is ready", url)
    if args.print_sql:
        print(USER_DATABASE_SQL)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
