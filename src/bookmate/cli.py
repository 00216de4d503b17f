"""Command line interface.

Usage:
    bookmate inbox
    bookmate delete 12
    bookmate pnl --local
    bookmate breakdown overhead --period year
    bookmate balances --month NOV
    bookmate drift --ai
    bookmate categories payment --action add --value "Bank Transfer - KBank"
    bookmate ranges --audit
    bookmate consistency
    bookmate report --type custom --start 2025-01-01 --end 2025-03-31
    bookmate report --template "Investor Update" --ai
    bookmate report --csv transactions
"""

import argparse
import asyncio
import json
import sys
from typing import Any

import structlog

from bookmate.app import BookMate
from bookmate.clients.insights import TONE_PRESETS
from bookmate.config import bind_account_context, configure_logging, resolve_account
from bookmate.errors import BookMateError
from bookmate.reports import find_template, report_to_csv, transactions_to_csv

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookmate",
        description="BookMate - Google Sheets bookkeeping tools",
    )
    parser.add_argument("--account", help="Account id from the accounts file (default: first)")
    sub = parser.add_subparsers(dest="command", required=True)

    inbox = sub.add_parser("inbox", help="List inbox entries")
    inbox.add_argument("--force", action="store_true", help="Bypass the cache")

    delete = sub.add_parser("delete", help="Delete an inbox entry by sheet row")
    delete.add_argument("row", type=int)

    pnl = sub.add_parser("pnl", help="Month and year P&L")
    pnl.add_argument("--local", action="store_true", help="Compute from named ranges")
    pnl.add_argument("--live", action="store_true", help="Per-category P&L from the Lists tab")

    breakdown = sub.add_parser("breakdown", help="Expense breakdown")
    breakdown.add_argument("kind", choices=["property_person", "overhead"])
    breakdown.add_argument("--period", choices=["month", "year"], default="month")
    breakdown.add_argument("--sheets", action="store_true", help="Read the P&L tab directly")

    balances = sub.add_parser("balances", help="Account balances")
    balances.add_argument("--month", default="ALL")

    drift = sub.add_parser("drift", help="Balance drift checks")
    drift.add_argument("--month", default="ALL")
    drift.add_argument("--ai", action="store_true", help="Add an AI summary")

    categories = sub.add_parser("categories", help="List or edit a category list")
    categories.add_argument("kind", help="revenue, overhead, property or payment")
    categories.add_argument("--action", choices=["add", "edit", "delete"])
    categories.add_argument("--value", help="New value for add/edit")
    categories.add_argument("--old", help="Current value at --index")
    categories.add_argument("--index", type=int)

    ranges = sub.add_parser("ranges", help="Named ranges on the P&L tab")
    ranges.add_argument("--audit", action="store_true", help="Check ranges against row labels")

    consistency = sub.add_parser("consistency", help="Run data consistency checks")
    consistency.add_argument("--month", default="ALL")

    report = sub.add_parser("report", help="Generate a financial report")
    report.add_argument("--type", dest="kind", default="monthly",
                        choices=["monthly", "quarterly", "ytd", "custom"])
    report.add_argument("--start")
    report.add_argument("--end")
    report.add_argument("--template", help="Named report template, e.g. \"Investor Update\"")
    report.add_argument("--ai", action="store_true", help="Add AI insights")
    report.add_argument("--tone", choices=sorted(TONE_PRESETS), help="Tone of the AI insights")
    report.add_argument("--csv", choices=["report", "transactions"], help="Print CSV instead of JSON")

    return parser


async def execute(app: BookMate, args: argparse.Namespace) -> dict[str, Any] | str:
    """Run one command and return its JSON-ready result, or CSV text."""
    if args.command == "inbox":
        return (await app.inbox.fetch(force=args.force)).to_dict()

    if args.command == "delete":
        return await app.inbox.delete(args.row)

    if args.command == "pnl":
        if args.live:
            return (await app.pnl_sheets.live()).to_dict()
        if args.local:
            return (await app.pnl.snapshot_from_named_ranges()).to_dict()
        return (await app.pnl.get_snapshot()).to_dict()

    if args.command == "breakdown":
        if args.sheets:
            result = await app.pnl_sheets.breakdown(args.kind, args.period)
        else:
            result = await app.pnl.get_breakdown(args.kind, args.period)
        return result.to_dict()

    if args.command == "balances":
        return (await app.balances.summary(args.month)).to_dict()

    if args.command == "drift":
        insights = app.insights if args.ai else None
        return (await app.balances.drift(args.month, insights)).to_dict()

    if args.command == "categories":
        if args.action:
            items = await app.categories.apply(
                args.kind, args.action, new_value=args.value, old_value=args.old, index=args.index
            )
        else:
            items = await app.categories.list(args.kind)
        return {"ok": True, "data": items, "count": len(items)}

    if args.command == "ranges":
        if args.audit:
            return (await app.pnl_sheets.audit_named_ranges()).to_dict()
        ranges = await app.sheets.list_named_ranges()
        return {"ok": True, "data": ranges, "count": len(ranges)}

    if args.command == "consistency":
        return (await app.consistency.run(args.month)).to_dict()

    if args.command == "report":
        custom = (args.start, args.end) if args.kind == "custom" else None
        template = find_template(args.template) if args.template else None
        report = await app.report(args.kind, custom, template=template)
        if args.csv == "report":
            return report_to_csv(report)
        if args.csv == "transactions":
            return transactions_to_csv(report.transactions)

        result = report.to_dict()
        if args.ai:
            tone = args.tone or (template.ai_tone if template else None) or "standard"
            result["aiInsights"] = (await app.report_insights(report, tone)).to_dict()
        return result

    raise ValueError(f"Unknown command: {args.command}")


async def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)

    try:
        account = resolve_account(args.account)
    except (KeyError, ValueError) as e:
        # KeyError for an unknown id, ValueError for a malformed registry.
        message = e.args[0] if e.args else str(e)
        logger.error("account_resolution_failed", account_id=args.account, error=message)
        print(json.dumps({"ok": False, "error": message}), file=sys.stderr)
        return 2

    bind_account_context(account.account_id, account.spreadsheet_id)

    try:
        async with BookMate(account) as app:
            result = await execute(app, args)
    except BookMateError as e:
        logger.error("command_failed", command=args.command, error=e.message, status=e.status_code)
        print(json.dumps(e.to_dict(), indent=2, default=str))
        return 1

    if isinstance(result, str):
        print(result, end="")
    else:
        print(json.dumps(result, indent=2, default=str, ensure_ascii=False))
    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))
