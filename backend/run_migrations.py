#!/usr/bin/env python3
"""
Run PowerMate migrations against the PostgreSQL database from POWERMATE_DSN (.env or env).

Requires a database user with CREATE TABLE privileges. SQLite stores
(POWERMATE_DSN=sqlite:///...) need no migrations: the API creates their tables
when it opens the file.

Usage: from backend dir: python run_migrations.py
"""
import logging
import os
import sys
from pathlib import Path

import psycopg

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger("run_migrations")

# Load .env from backend directory
_backend_dir = Path(__file__).resolve().parent
_env = _backend_dir / ".env"
if _env.exists():
    from dotenv import load_dotenv
    load_dotenv(_env)

migrations_dir = _backend_dir.parent / "migrations"


def main():
    dsn = os.environ.get("POWERMATE_DSN", "").strip()
    if not dsn:
        logger.error("POWERMATE_DSN not set. Set it in backend/.env or the environment.")
        sys.exit(1)
    if dsn.lower().startswith(("sqlite:", "file:")):
        logger.info("POWERMATE_DSN is a SQLite file; tables are created on first use. Nothing to do.")
        return
    sql_files = sorted(migrations_dir.glob("*.sql"))
    if not sql_files:
        logger.error("No .sql files in %s", migrations_dir)
        sys.exit(1)
    logger.info("Connecting and running %d migration(s)...", len(sql_files))
    try:
        with psycopg.connect(dsn) as conn:
            with conn.cursor() as cur:
                for f in sql_files:
                    logger.info("Running %s...", f.name)
                    cur.execute(f.read_text())
                    conn.commit()
                    logger.info("OK %s", f.name)
        logger.info("Done.")
    except psycopg.errors.InsufficientPrivilege:
        logger.error(
            "Permission denied: this database user cannot CREATE tables. "
            "Ask your DBA to run the SQL in migrations/ once, or point POWERMATE_DSN at a database you own."
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
