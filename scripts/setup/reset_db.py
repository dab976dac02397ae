import argparse
import asyncio
import sys

from psycopg import sql
from psycopg_pool import AsyncConnectionPool

from core.app_config import load_app_config
from core.utils import REPO_ROOT, set_loop_policy

set_loop_policy()

SCHEMA_SQL = REPO_ROOT / "scripts" / "setup" / "init_db.sql"


def _masked(dsn: str) -> str:
    return "...@" + dsn.split("@")[-1] if "@" in dsn else "..."


async def apply_schema(pool: AsyncConnectionPool) -> None:
    ddl = SCHEMA_SQL.read_text(encoding="utf-8")
    async with pool.connection() as conn:
        await conn.execute(ddl)


async def reset_db(dsn: str, *, drop: bool, assume_yes: bool, grant_role: str | None = None) -> int:
    if drop and not assume_yes:
        print("WARNING: this drops the agent schema (sessions, hop results, diagnostics).")
        confirm = input("Are you sure? (y/n): ")
        if confirm.lower() != "y":
            print("Aborted.")
            return 1

    pool = AsyncConnectionPool(dsn, open=False)
    await pool.open()
    try:
        if drop:
            async with pool.connection() as conn:
                print("Dropping schema agent...")
                await conn.execute("DROP SCHEMA IF EXISTS agent CASCADE;")
        print("Creating schema...")
        await apply_schema(pool)

        if grant_role:
            print(f"Granting permissions to role: {grant_role}...")
            async with pool.connection() as conn:
                await conn.execute(
                    sql.SQL("GRANT USAGE ON SCHEMA agent TO {}").format(sql.Identifier(grant_role))
                )
                await conn.execute(
                    sql.SQL("GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA agent TO {}").format(
                        sql.Identifier(grant_role)
                    )
                )
    finally:
        await pool.close()
    print("Done.")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Create (or recreate) the turnrelay database schema.")
    parser.add_argument("--dsn", help="Postgres DSN (defaults to [postgres].dsn / PG_DSN)")
    parser.add_argument("--drop", action="store_true", help="drop the agent schema first")
    parser.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation")
    parser.add_argument("--grant-role", help="role to grant table access to")
    args = parser.parse_args()

    dsn = args.dsn or load_app_config().postgres.dsn
    if not dsn:
        print("No DSN found. Set PG_DSN or configure [postgres].dsn in config.toml")
        return 1
    print(f"Target DB: {_masked(dsn)}")
    return asyncio.run(reset_db(dsn, drop=args.drop, assume_yes=args.yes, grant_role=args.grant_role))


if __name__ == "__main__":
    sys.exit(main())
