from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterator

import psycopg


@dataclass(frozen=True)
class MigrationResult:
    applied: list[str]
    already_applied: list[str]


def migrations_dir() -> str:
    return os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "migrations"))


def iter_migration_files(mig_dir: str | None = None) -> Iterator[str]:
    d = mig_dir or migrations_dir()
    if not os.path.isdir(d):
        return iter(())
    names = sorted(n for n in os.listdir(d) if n.endswith(".sql"))
    return iter([os.path.join(d, n) for n in names])


def ensure_migrations_table(conn: psycopg.Connection) -> None:
    conn.execute(
        """
        CREATE SCHEMA IF NOT EXISTS apply_meta;
        CREATE TABLE IF NOT EXISTS apply_meta.schema_migrations (
          name text PRIMARY KEY,
          applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )


def migrate(db_url: str) -> MigrationResult:
    applied: list[str] = []
    already: list[str] = []
    with psycopg.connect(db_url, autocommit=True) as conn:
        ensure_migrations_table(conn)
        for path in iter_migration_files():
            name = os.path.basename(path)
            row = conn.execute(
                "SELECT 1 FROM apply_meta.schema_migrations WHERE name=%s",
                (name,),
            ).fetchone()
            if row:
                already.append(name)
                continue
            with open(path, "r", encoding="utf-8") as f:
                sql = f.read()
            conn.execute(sql)
            conn.execute("INSERT INTO apply_meta.schema_migrations(name) VALUES (%s)", (name,))
            applied.append(name)
    return MigrationResult(applied=applied, already_applied=already)
