#!/usr/bin/env python3
"""
First-run setup: apply the schema, create the store company and an Owner
login with every permission.

    BOOTSTRAP_ADMIN=1 DATABASE_URL=... python -m luminila.scripts.bootstrap_admin
"""
import os
import secrets
import sys
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

from luminila.app.gst import is_known_state_code
from luminila.app.security import hash_password

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "db" / "migrations"


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def apply_migrations(conn) -> list:
    # Every migration is written to be re-runnable.
    applied = []
    for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
        with conn.transaction():
            conn.execute(path.read_text(encoding="utf-8"))
        applied.append(path.name)
    return applied


def ensure_company(cur, name: str, state_code: str, gstin: str) -> str:
    cur.execute("SELECT id FROM companies ORDER BY created_at ASC LIMIT 1")
    row = cur.fetchone()
    if row:
        return row["id"]
    cur.execute(
        "INSERT INTO companies (id, name, state_code, gstin) VALUES (gen_random_uuid(), %s, %s, %s) RETURNING id",
        (name, state_code or None, gstin or None),
    )
    return cur.fetchone()["id"]


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_admin: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@luminila.local").strip().lower()
    if not email:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_EMAIL is empty", file=sys.stderr)
        return 2

    state_code = os.getenv("BOOTSTRAP_COMPANY_STATE_CODE", "").strip()
    if state_code and not is_known_state_code(state_code):
        print(f"bootstrap_admin: unknown state code {state_code}", file=sys.stderr)
        return 2

    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    role_name = os.getenv("BOOTSTRAP_ADMIN_ROLE_NAME", "Owner").strip() or "Owner"
    company_name = os.getenv("BOOTSTRAP_COMPANY_NAME", "Luminila").strip() or "Luminila"

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        if _truthy(os.getenv("BOOTSTRAP_APPLY_SCHEMA", "1")):
            for name in apply_migrations(conn):
                print(f"applied: {name}")

        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE email = %s", (email,))
                if cur.fetchone():
                    # Idempotent: don't create duplicate users.
                    return 0

                company_id = ensure_company(cur, company_name, state_code, os.getenv("BOOTSTRAP_COMPANY_GSTIN", "").strip().upper())

                cur.execute(
                    """
                    INSERT INTO users (id, email, full_name, hashed_password, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, true)
                    RETURNING id
                    """,
                    (email, "Store Owner", hash_password(password)),
                )
                user_id = cur.fetchone()["id"]

                cur.execute(
                    """
                    INSERT INTO roles (id, company_id, name, description, is_system)
                    VALUES (gen_random_uuid(), %s, %s, 'Full access', true)
                    ON CONFLICT (company_id, name) DO UPDATE SET is_system = true
                    RETURNING id
                    """,
                    (company_id, role_name),
                )
                role_id = cur.fetchone()["id"]

                # Grant everything to the bootstrap role.
                cur.execute(
                    """
                    INSERT INTO role_permissions (role_id, permission_id)
                    SELECT %s, p.id
                    FROM permissions p
                    ON CONFLICT DO NOTHING
                    """,
                    (role_id,),
                )
                cur.execute(
                    """
                    INSERT INTO user_roles (user_id, role_id, company_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (user_id, role_id, company_id),
                )

    print("BOOTSTRAP_ADMIN_CREATED")
    print(f"email: {email}")
    print(f"company_id: {company_id}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_ADMIN_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
