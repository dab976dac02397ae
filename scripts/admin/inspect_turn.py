"""
Inspect a session's current turn, its hop results and diagnostics.

Usage:
  python -m scripts.admin.inspect_turn --session sess_01
  python -m scripts.admin.inspect_turn --session sess_01 --turn-id turn_xxx --diagnostics
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Optional

import psycopg
from psycopg.rows import dict_row

from core.app_config import load_app_config


def _fetch_session(conn: psycopg.Connection, session_id: str) -> Optional[dict]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT session_id, status, current_turn_id, cycle_count, step_description,
                   last_error, last_error_code, last_result_ref, updated_at
            FROM agent.chat_sessions
            WHERE session_id=%s
            """,
            (session_id,),
        )
        return cur.fetchone()


def _summarize_payload(payload: Any) -> str:
    if not isinstance(payload, dict):
        return "payload=non-dict"
    parts = []
    for key in ("tool_name", "error_code", "message_id"):
        if payload.get(key):
            parts.append(f"{key}={payload[key]}")
    text = payload.get("output") or payload.get("content") or ""
    parts.append(f"text_len={len(str(text))}")
    return " ".join(parts)


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect turn state and hop results")
    parser.add_argument("--session", required=True)
    parser.add_argument("--turn-id", help="defaults to the session's current turn")
    parser.add_argument("--dsn", help="Postgres DSN (defaults to config)")
    parser.add_argument("--diagnostics", action="store_true", help="also print diagnostic records")
    parser.add_argument("--json", action="store_true", help="print raw hop payloads")
    args = parser.parse_args()

    dsn = args.dsn or load_app_config().postgres.dsn

    with psycopg.connect(dsn, row_factory=dict_row) as conn:
        session = _fetch_session(conn, args.session)
        if session is None:
            raise SystemExit(f"session not found: {args.session}")

        print(
            f"session: {session['session_id']} status={session['status']} "
            f"cycle={session['cycle_count']} updated_at={session['updated_at']}"
        )
        if session["step_description"]:
            print(f"step: {session['step_description']}")
        if session["last_error"]:
            print(f"last_error: [{session['last_error_code']}] {session['last_error']}")

        turn_id = args.turn_id or session["current_turn_id"]
        if not turn_id:
            raise SystemExit("session has no turn")
        print(f"turn_id: {turn_id}")

        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT result_key, cycle_count, hop_kind, success, payload, created_at
                FROM agent.hop_results
                WHERE turn_id=%s
                ORDER BY created_at ASC
                """,
                (turn_id,),
            )
            rows = cur.fetchall()
        print(f"hop results: {len(rows)}")
        for row in rows:
            print(
                f"- {row['result_key']} kind={row['hop_kind']} success={row['success']} "
                f"at={row['created_at']} {_summarize_payload(row['payload'])}"
            )
            if args.json:
                print(json.dumps(row["payload"], ensure_ascii=False, indent=2, default=str))

        if args.diagnostics:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT level, message, data, created_at
                    FROM agent.turn_diagnostics
                    WHERE turn_id=%s
                    ORDER BY created_at ASC
                    """,
                    (turn_id,),
                )
                diags = cur.fetchall()
            print(f"diagnostics: {len(diags)}")
            for diag in diags:
                print(f"- {diag['created_at']} [{diag['level']}] {diag['message']} {diag['data']}")


if __name__ == "__main__":
    main()
