"""Reporting queries that span multiple tables.

These go beyond single-table CRUD and implement aggregations used by
the stats, summary and export commands.
"""

from __future__ import annotations

import sqlite3

EXPORT_ROW_LIMIT = 10000


def get_allocation_stats(conn: sqlite3.Connection) -> dict:
    """Rule totals, per-category learning counts and the 10 most reinforced rules."""
    total = conn.execute("SELECT COUNT(*) FROM allocation_rules").fetchone()[0]
    by_category = conn.execute(
        "SELECT category, COUNT(*) AS rule_count,"
        "  SUM(learned_from_count) AS times_learned"
        " FROM allocation_rules"
        " GROUP BY category"
        " ORDER BY rule_count DESC, category"
    ).fetchall()
    top_rules = conn.execute(
        "SELECT pattern, normalized_pattern, category, confidence, learned_from_count"
        " FROM allocation_rules"
        " ORDER BY learned_from_count DESC, rowid"
        " LIMIT 10"
    ).fetchall()
    return {
        "total_rules": total,
        "by_category": [dict(r) for r in by_category],
        "top_rules": [dict(r) for r in top_rules],
    }


def get_allocation_summary(conn: sqlite3.Connection) -> dict:
    """Queue counts, LLM cache size and the five most recent job runs."""
    pending = conn.execute(
        "SELECT COUNT(*) FROM bank_transactions"
        " WHERE processed = 0 AND confirmed_category IS NULL"
    ).fetchone()[0]
    processed = conn.execute(
        "SELECT COUNT(*) FROM bank_transactions WHERE processed = 1"
    ).fetchone()[0]
    needs_review = conn.execute(
        "SELECT COUNT(*) FROM bank_transactions"
        " WHERE processed = 0 AND suggested_category IS NOT NULL"
    ).fetchone()[0]
    cache_size = conn.execute(
        "SELECT COUNT(*) FROM allocation_llm_cache"
    ).fetchone()[0]
    recent = conn.execute(
        "SELECT id, status, started_at, completed_at, transactions_processed,"
        "  auto_allocated, llm_allocated, needs_review, errors, error_message"
        " FROM allocation_job_runs"
        " ORDER BY started_at DESC, rowid DESC LIMIT 5"
    ).fetchall()
    return {
        "pending": pending,
        "processed": processed,
        "needs_review": needs_review,
        "llm_cache_size": cache_size,
        "recent_jobs": [dict(r) for r in recent],
    }


def export_allocation_rules(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute(
        "SELECT pattern, normalized_pattern, category, confidence,"
        "  learned_from_count, is_global, client_id"
        " FROM allocation_rules"
        " ORDER BY category, learned_from_count DESC, rowid"
    ).fetchall()
    return [
        {**dict(r), "is_global": bool(r["is_global"])}
        for r in rows
    ]


def export_transactions(
    conn: sqlite3.Connection,
    status: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    category: str | None = None,
    include_unconfirmed: bool = False,
) -> list[dict]:
    """Transactions for export, newest first.

    status: processed | pending | review (anything else means all).
    Amounts are signed (debits negative); `status` in each row is
    confirmed, suggested or unallocated.
    """
    sql = "SELECT * FROM bank_transactions WHERE 1 = 1"
    params: list = []
    if status == "processed":
        sql += " AND processed = 1 AND confirmed_category IS NOT NULL"
    elif status == "pending":
        sql += " AND processed = 0 AND confirmed_category IS NULL"
    elif status == "review":
        sql += (" AND processed = 0 AND suggested_category IS NOT NULL"
                " AND confirmed_category IS NULL")
    if date_from:
        sql += " AND date >= ?"
        params.append(date_from)
    if date_to:
        sql += " AND date <= ?"
        params.append(date_to)
    if category:
        if include_unconfirmed:
            sql += (" AND (confirmed_category = ?"
                    " OR (suggested_category = ? AND confirmed_category IS NULL))")
            params += [category, category]
        else:
            sql += " AND confirmed_category = ?"
            params.append(category)
    sql += " ORDER BY date DESC, rowid DESC LIMIT ?"
    params.append(EXPORT_ROW_LIMIT)

    result = []
    for r in conn.execute(sql, params).fetchall():
        code = r["confirmed_category"] or r["suggested_category"]
        if r["confirmed_category"]:
            row_status = "confirmed"
        elif r["suggested_category"]:
            row_status = "suggested"
        else:
            row_status = "unallocated"
        result.append({
            "id": r["id"],
            "date": r["date"],
            "description": r["description"],
            "raw_description": r["raw_description"],
            "amount": -r["amount"] if r["is_debit"] else r["amount"],
            "is_debit": bool(r["is_debit"]),
            "category_code": code,
            "confidence": r["suggested_confidence"],
            "status": row_status,
            "processed": bool(r["processed"]),
        })
    return result
