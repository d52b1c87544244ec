#!/usr/bin/env python3
"""Create the webhook event log and subscriber tables.

Reads DATABASE_URL (or POSTGRES_URL) from the environment / .env file.
Run from project root: python scripts/db_init.py
"""

import os
import sys

import psycopg2
from dotenv import load_dotenv

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)
load_dotenv(os.path.join(project_root, ".env"))

from miniapp_notify.store import EVENTS_TABLE, SCHEMA_SQL, SUBSCRIBERS_TABLE


def main():
    database_url = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL")
    if not database_url:
        print("Missing DATABASE_URL (or POSTGRES_URL)")
        sys.exit(1)

    print("Connecting to database...")
    conn = psycopg2.connect(database_url)
    conn.autocommit = True
    cur = conn.cursor()
    try:
        print("Creating tables...")
        cur.execute(SCHEMA_SQL)

        cur.execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'public' AND table_name IN (%s, %s) ORDER BY table_name;",
            (EVENTS_TABLE, SUBSCRIBERS_TABLE),
        )
        tables = [row[0] for row in cur.fetchall()]
        print(f"Tables ready: {tables}")

        cur.execute(f"SELECT count(*), count(*) FILTER (WHERE enabled) FROM {SUBSCRIBERS_TABLE};")
        total, enabled = cur.fetchone()
        print(f"Subscribers: total={total} enabled={enabled}")
    finally:
        cur.close()
        conn.close()
    print("\nDB schema ready")


if __name__ == "__main__":
    main()
