"""CLI entry point for Sean.

Commands:
    sean suggest DESCRIPTION [--client ID]        Suggest a category
    sean learn DESCRIPTION CATEGORY [--client ID] Learn from a correction
    sean learn --transaction ID CATEGORY          Correct a stored transaction
    sean import FILE [--client ID]                Import a bank CSV or JSON file
    sean run [--limit N]                          Run one allocation job now
    sean cron                                     Scheduled allocation tick
    sean agent show                               Show agent state
    sean agent set STATUS [options]               Change agent status/settings
    sean ask QUESTION [--client ID] [--layer L]   Answer from the knowledge base
    sean bootstrap QUESTION [--domain D]          Answer via KB or LLM, caching LLM answers
    sean teach [FILE]                             Submit a TEACH: message (stdin if no file)
    sean approve ITEM_ID / sean reject ITEM_ID    Review a knowledge submission
    sean stats                                    Learning and queue statistics
    sean export {transactions,rules} [filters]    Export as CSV or JSON
    sean client-category list|add|deactivate      Manage client categories
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on SEAN_LOG_LEVEL env var."""
    level = os.environ.get("SEAN_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from sean.config import Config

    config_dir = os.environ.get("SEAN_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database."""
    from sean.database.repository import Repository

    db_path = os.environ.get("SEAN_DB_PATH", "sean.db")
    return Repository(db_path=db_path)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("SEAN_MIGRATIONS_DIR", default))


def _get_provider(config):
    """LLM provider from LLM_PROVIDER / LLM_API_KEY, or None when unset."""
    from sean.llm.providers import provider_from_env

    provider = provider_from_env(config)
    if provider is None:
        logger.debug("No LLM_API_KEY set, running without an LLM provider")
    return provider


def _get_user() -> str:
    return os.environ.get("SEAN_USER", "cli")


def _open_repo():
    repo = _get_repo()
    repo.apply_migrations(_get_migrations_dir())
    return repo


# ── Command handlers ─────────────────────────────────────


def cmd_suggest(args: argparse.Namespace) -> int:
    """Print the suggested category for a description."""
    from sean.categorize.suggest import suggest_category

    config = _get_config()
    repo = _open_repo()
    try:
        s = suggest_category(args.description, repo, config, args.client)
        if s.category is None:
            print("No suggestion (no rule or keyword matched)")
            return 0
        print(f"{s.category} ({s.category_label})  confidence={s.confidence:.2f}  via {s.match_type}")
        for alt in s.alternatives:
            print(f"  alt: {alt.code} ({alt.label})  {alt.confidence:.2f}")
        return 0
    finally:
        repo.close()


def cmd_learn(args: argparse.Namespace) -> int:
    """Learn a rule from a correction, optionally confirming a transaction."""
    from sean.categorize.learner import apply_correction, learn_from_correction

    config = _get_config()
    repo = _open_repo()
    try:
        if args.transaction:
            result = apply_correction(
                args.transaction, args.category, repo, config, _get_user(),
                feedback=args.feedback,
            )
        else:
            if not args.description:
                print("Error: DESCRIPTION or --transaction is required")
                return 1
            result = learn_from_correction(
                args.description, args.category, repo, config, _get_user(),
                feedback=args.feedback,
                client_id=args.client,
                is_global=True if args.is_global else None,
            )
        verb = "Created" if result.is_new else "Reinforced"
        print(f"{verb} rule {result.rule_id} -> {args.category}")
        return 0
    finally:
        repo.close()


def cmd_import(args: argparse.Namespace) -> int:
    """Import a bank CSV or JSON file into the pending queue."""
    from sean.importer import import_transactions
    from sean.parsers.csv_parser import BankCsvParser
    from sean.parsers.json_parser import JsonTransactionParser

    filepath = args.file.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return 1

    parser = None
    for candidate in (JsonTransactionParser(args.client), BankCsvParser(args.client)):
        if candidate.detect(filepath):
            parser = candidate
            break
    if parser is None:
        print(f"Error: Unsupported file: {filepath.name}"
              " (expected JSON or CSV with Date, Description, Amount columns)")
        return 1

    try:
        records = parser.parse(filepath)
    except (ValueError, OSError) as e:
        print(f"Error: Could not read {filepath.name}: {e}")
        return 1

    repo = _open_repo()
    try:
        result = import_transactions(records, repo, _get_user())
    finally:
        repo.close()

    print(
        f"{filepath.name}: imported={result.imported} duplicates={result.skipped}"
        f" unreadable={parser.skipped_count} errors={result.errors}"
    )
    return 1 if result.errors else 0


def _print_job(job) -> None:
    print(
        f"Job {job.job_id}: processed={job.processed} auto={job.auto_allocated}"
        f" llm={job.llm_allocated} review={job.needs_review} errors={job.errors}"
    )


def cmd_run(args: argparse.Namespace) -> int:
    """Run one allocation job immediately."""
    from sean.categorize.jobs import run_allocation_job

    config = _get_config()
    repo = _open_repo()
    try:
        limit = args.limit or int(config.allocation.get("job_limit", 100))
        threshold = args.auto_confirm_above
        if threshold is None:
            threshold = float(config.allocation.get("job_auto_confirm_above", 0.85))
        job = run_allocation_job(
            repo, config, _get_provider(config),
            user_id=args.user,
            limit=limit,
            auto_confirm_above=threshold,
            use_llm_fallback=not args.no_llm,
        )
        _print_job(job)
        return 0
    finally:
        repo.close()


def cmd_cron(args: argparse.Namespace) -> int:
    """Scheduled tick: run allocation if the agent is due."""
    from sean.categorize.scheduler import run_scheduled_allocation

    config = _get_config()
    repo = _open_repo()
    try:
        result = run_scheduled_allocation(repo, config, _get_provider(config))
        if not result.executed:
            print(f"Skipped: {result.reason}")
        elif result.job is None:
            print(f"{result.reason}. Next run: {result.next_run}")
        else:
            _print_job(result.job)
            print(f"Next run: {result.next_run}")
        return 0
    finally:
        repo.close()


def _print_agent(agent) -> None:
    print(f"{agent.name} [{agent.status}]")
    print(f"  Authorized actions:  {', '.join(agent.authorized_actions) or '(none)'}")
    print(f"  Auto-allocate:       {'on' if agent.auto_allocate_enabled else 'off'}"
          f" every {agent.auto_allocate_interval} min,"
          f" min confidence {agent.auto_allocate_min_confidence:.2f}")
    print(f"  LLM fallback:        {'on' if agent.llm_fallback_enabled else 'off'}")
    print(f"  Last run:            {agent.auto_allocate_last_run or 'never'}")
    print(f"  Next run:            {agent.auto_allocate_next_run or 'not scheduled'}")
    print(f"  Totals:              {agent.total_allocations} allocations,"
          f" {agent.total_llm_calls} LLM calls")


def cmd_agent(args: argparse.Namespace) -> int:
    """Show or change the agent state."""
    from sean.categorize.scheduler import get_agent, update_agent_status

    config = _get_config()
    repo = _open_repo()
    try:
        if args.agent_command == "set":
            enabled = None
            if args.enable_auto:
                enabled = True
            elif args.disable_auto:
                enabled = False
            actions = args.actions.split(",") if args.actions else None
            agent = update_agent_status(
                repo, args.status, _get_user(), config,
                authorized_actions=actions,
                auto_allocate_enabled=enabled,
                auto_allocate_interval=args.interval,
                auto_allocate_min_confidence=args.min_confidence,
            )
        else:
            agent = get_agent(repo, config)
        _print_agent(agent)
        return 0
    finally:
        repo.close()


def cmd_ask(args: argparse.Namespace) -> int:
    """Answer a question from approved knowledge."""
    from sean.knowledge.reasoning import reason

    repo = _open_repo()
    try:
        result = reason(args.question, repo, args.client, args.layer, _get_user())
        print(result.answer)
        for action in result.actions:
            print(f"  -> {action.title}: {action.summary}")
        if args.debug:
            print(json.dumps(result.debug, indent=2))
        return 0
    finally:
        repo.close()


def cmd_bootstrap(args: argparse.Namespace) -> int:
    """Answer via the knowledge base, falling back to a cached LLM answer."""
    from sean.knowledge.bootstrap import bootstrap_answer, get_bootstrap_stats

    config = _get_config()
    repo = _open_repo()
    try:
        if args.stats:
            stats = get_bootstrap_stats(repo)
            print(f"Bootstrapped answers: {stats['total_bootstraps']}")
            for entry in stats["recent_bootstraps"]:
                print(f"  {entry['created_at']}  {entry['details'].get('question', '')}")
            return 0
        if not args.question:
            print("Error: QUESTION is required")
            return 1
        result = bootstrap_answer(
            args.question, repo, _get_user(),
            domain=args.domain, provider=_get_provider(config), config=config,
        )
        print(result.answer)
        if result.citation_id:
            label = "cached" if result.cached else result.source
            print(f"  [{result.citation_id}] ({label})")
        return 0
    finally:
        repo.close()


def cmd_teach(args: argparse.Namespace) -> int:
    """Submit a teach message as a PENDING knowledge item."""
    from sean.knowledge.teach import parse_teach_message, submit_knowledge

    text = args.file.read_text() if args.file else sys.stdin.read()
    teach = parse_teach_message(text)
    repo = _open_repo()
    try:
        item = submit_knowledge(teach, repo, _get_user())
        print(f"Submitted {item.citation_id} (id {item.id}), pending approval")
        return 0
    finally:
        repo.close()


def _set_status(item_id: str, status: str) -> int:
    from sean.knowledge.teach import set_item_status

    repo = _open_repo()
    try:
        item = set_item_status(item_id, status, repo, _get_user())
        print(f"{item.citation_id}: {item.status}")
        return 0
    finally:
        repo.close()


def cmd_approve(args: argparse.Namespace) -> int:
    return _set_status(args.item_id, "APPROVED")


def cmd_reject(args: argparse.Namespace) -> int:
    return _set_status(args.item_id, "REJECTED")


def cmd_stats(args: argparse.Namespace) -> int:
    """Display learning and queue statistics."""
    from sean.database.queries import get_allocation_stats, get_allocation_summary

    repo = _open_repo()
    try:
        stats = get_allocation_stats(repo.conn)
        summary = get_allocation_summary(repo.conn)
    finally:
        repo.close()

    print("Sean Allocation Status")
    print("=" * 40)
    print(f"  Pending:             {summary['pending']:,}")
    print(f"  Processed:           {summary['processed']:,}")
    print(f"  Needs review:        {summary['needs_review']:,}")
    print(f"  Learned rules:       {stats['total_rules']:,}")
    print(f"  LLM cache entries:   {summary['llm_cache_size']:,}")
    if stats["by_category"]:
        print("\nRules by category:")
        for row in stats["by_category"]:
            print(f"  {row['category']:<28} {row['rule_count']:>5}  learned {row['times_learned']}")
    if summary["recent_jobs"]:
        print("\nRecent jobs:")
        for job in summary["recent_jobs"]:
            print(
                f"  {job['started_at']}  {job['status']:<9}"
                f" processed={job['transactions_processed']} errors={job['errors']}"
            )
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export transactions or learned rules to stdout."""
    from sean.database.queries import export_allocation_rules, export_transactions

    repo = _open_repo()
    try:
        if args.what == "rules":
            rows = export_allocation_rules(repo.conn)
        else:
            rows = export_transactions(
                repo.conn,
                status=args.status,
                date_from=args.date_from,
                date_to=args.date_to,
                category=args.category,
                include_unconfirmed=args.include_unconfirmed,
            )
    finally:
        repo.close()

    if args.format == "json":
        print(json.dumps(rows, indent=2))
        return 0
    if rows:
        writer = csv.DictWriter(sys.stdout, fieldnames=list(rows[0]))
        writer.writeheader()
        writer.writerows(rows)
    return 0


def cmd_client_category(args: argparse.Namespace) -> int:
    """Manage a client's custom categories."""
    from sean.database.models import ClientCategory

    repo = _open_repo()
    try:
        if args.cc_command == "add":
            keywords = [k.strip().lower() for k in (args.keywords or "").split(",") if k.strip()]
            cat = repo.upsert_client_category(ClientCategory(
                client_id=args.client_id, code=args.code, label=args.label, keywords=keywords,
            ))
            print(f"Saved {cat.client_id}/{cat.code} ({cat.label})")
            return 0
        if args.cc_command == "deactivate":
            if not repo.deactivate_client_category(args.client_id, args.code):
                print(f"Error: No category {args.code} for client {args.client_id}")
                return 1
            print(f"Deactivated {args.client_id}/{args.code}")
            return 0

        cats = repo.get_client_categories(args.client_id, active_only=not args.all)
        if not cats:
            print(f"No categories for client {args.client_id}")
            return 0
        for c in cats:
            state = "" if c.is_active else "  (inactive)"
            print(f"  {c.code:<20} {c.label:<30} {', '.join(c.keywords)}{state}")
        return 0
    finally:
        repo.close()


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "suggest": cmd_suggest,
    "learn": cmd_learn,
    "import": cmd_import,
    "run": cmd_run,
    "cron": cmd_cron,
    "agent": cmd_agent,
    "ask": cmd_ask,
    "bootstrap": cmd_bootstrap,
    "teach": cmd_teach,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "stats": cmd_stats,
    "export": cmd_export,
    "client-category": cmd_client_category,
}


def main(argv: list[str] | None = None):
    from sean.validation import NotFoundError, ValidationError

    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="sean",
        description="Sean accounting assistant",
    )
    subparsers = parser.add_subparsers(dest="command")

    # suggest
    suggest_p = subparsers.add_parser("suggest", help="Suggest a category for a description")
    suggest_p.add_argument("description", help="Raw bank description")
    suggest_p.add_argument("--client", help="Client ID for client-scoped rules")

    # learn
    learn_p = subparsers.add_parser("learn", help="Learn from a category correction")
    learn_p.add_argument("description", nargs="?", help="Raw bank description")
    learn_p.add_argument("category", help="Correct category code")
    learn_p.add_argument("--transaction", help="Correct a stored transaction by ID")
    learn_p.add_argument("--client", help="Client ID (rule is client-scoped)")
    learn_p.add_argument("--global", dest="is_global", action="store_true",
                         help="Force a global rule even with --client")
    learn_p.add_argument("--feedback", help="Free-text note kept with the correction")

    # import
    import_p = subparsers.add_parser("import", help="Import a bank CSV or JSON file")
    import_p.add_argument("file", type=Path, help="File to import")
    import_p.add_argument("--client", help="Client ID for rows without one")

    # run
    run_p = subparsers.add_parser("run", help="Run one allocation job now")
    run_p.add_argument("--limit", type=int, help="Max transactions to process")
    run_p.add_argument("--user", help="Only this user's transactions")
    run_p.add_argument("--auto-confirm-above", type=float, help="Auto-confirm threshold")
    run_p.add_argument("--no-llm", action="store_true", help="Disable the LLM fallback")

    # cron
    subparsers.add_parser("cron", help="Run scheduled allocation if due")

    # agent
    agent_p = subparsers.add_parser("agent", help="Show or change agent state")
    agent_sub = agent_p.add_subparsers(dest="agent_command")
    agent_sub.add_parser("show", help="Show agent state")
    agent_set_p = agent_sub.add_parser("set", help="Change agent status and settings")
    agent_set_p.add_argument("status", help="ACTIVE, INACTIVE or PAUSED")
    agent_set_p.add_argument("--actions", help="Comma-separated authorized actions")
    auto = agent_set_p.add_mutually_exclusive_group()
    auto.add_argument("--enable-auto", action="store_true", help="Enable auto-allocation")
    auto.add_argument("--disable-auto", action="store_true", help="Disable auto-allocation")
    agent_set_p.add_argument("--interval", type=int, help="Minutes between runs")
    agent_set_p.add_argument("--min-confidence", type=float, help="Auto-confirm threshold")

    # ask
    ask_p = subparsers.add_parser("ask", help="Answer a question from the knowledge base")
    ask_p.add_argument("question")
    ask_p.add_argument("--client", help="Include this client's knowledge")
    ask_p.add_argument("--layer", help="LEGAL, FIRM or CLIENT")
    ask_p.add_argument("--debug", action="store_true", help="Print match diagnostics")

    # bootstrap
    boot_p = subparsers.add_parser("bootstrap", help="Answer via KB or LLM, caching the answer")
    boot_p.add_argument("question", nargs="?")
    boot_p.add_argument("--domain", help="Domain hint (e.g. VAT, PAYROLL)")
    boot_p.add_argument("--stats", action="store_true", help="Show bootstrap statistics")

    # teach
    teach_p = subparsers.add_parser("teach", help="Submit a TEACH: message")
    teach_p.add_argument("file", nargs="?", type=Path, help="Message file (default: stdin)")

    # approve / reject
    approve_p = subparsers.add_parser("approve", help="Approve a knowledge item")
    approve_p.add_argument("item_id")
    reject_p = subparsers.add_parser("reject", help="Reject a knowledge item")
    reject_p.add_argument("item_id")

    # stats
    subparsers.add_parser("stats", help="Learning and queue statistics")

    # export
    export_p = subparsers.add_parser("export", help="Export transactions or rules")
    export_p.add_argument("what", choices=["transactions", "rules"])
    export_p.add_argument("--format", choices=["csv", "json"], default="csv")
    export_p.add_argument("--status", choices=["processed", "pending", "review", "all"])
    export_p.add_argument("--from", dest="date_from", help="YYYY-MM-DD")
    export_p.add_argument("--to", dest="date_to", help="YYYY-MM-DD")
    export_p.add_argument("--category", help="Category code")
    export_p.add_argument("--include-unconfirmed", action="store_true",
                          help="Match suggested categories too")

    # client-category
    cc_p = subparsers.add_parser("client-category", help="Manage client categories")
    cc_sub = cc_p.add_subparsers(dest="cc_command")
    cc_list_p = cc_sub.add_parser("list", help="List a client's categories")
    cc_list_p.add_argument("client_id")
    cc_list_p.add_argument("--all", action="store_true", help="Include inactive")
    cc_add_p = cc_sub.add_parser("add", help="Add or update a client category")
    cc_add_p.add_argument("client_id")
    cc_add_p.add_argument("code")
    cc_add_p.add_argument("label")
    cc_add_p.add_argument("--keywords", help="Comma-separated keywords")
    cc_deact_p = cc_sub.add_parser("deactivate", help="Deactivate a client category")
    cc_deact_p.add_argument("client_id")
    cc_deact_p.add_argument("code")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)
    if args.command == "client-category" and args.cc_command is None:
        cc_p.print_help()
        sys.exit(1)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    try:
        code = handler(args)
    except (ValidationError, NotFoundError) as e:
        print(f"Error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
