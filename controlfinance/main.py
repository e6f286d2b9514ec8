#!/usr/bin/env python3
"""Control Finance CLI - serve the API and manage CSV imports."""
import argparse
import sys
import logging
from pathlib import Path

from controlfinance import config
from controlfinance.api.errors import AppError
from controlfinance.api.finance_service import FinanceService


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S"
    )


def cmd_serve(args):
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("controlfinance.web.api:app", host=args.host, port=args.port)
    return 0


def cmd_dry_run(args):
    """Validate a CSV file and open an import session."""
    file_path = Path(args.file)
    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        return 1

    with FinanceService() as service:
        try:
            result = service.imports.dry_run(args.user_id, file_path.read_bytes())
        except AppError as e:
            print(f"Error: {e.message}")
            return 1

    summary = result["summary"]
    print(f"Import session: {result['importId']}")
    print(f"  Expires at:    {result['expiresAt']}")
    print(f"  Total rows:    {summary['totalRows']}")
    print(f"  Valid:         {summary['validRows']}")
    print(f"  Invalid:       {summary['invalidRows']}")
    print(f"  Income:        {summary['income']:,.2f}")
    print(f"  Expense:       {summary['expense']:,.2f}")

    invalid = [r for r in result["rows"] if r["status"] == "invalid"]
    for row in invalid[:args.limit]:
        messages = "; ".join(f"{e['field']}: {e['message']}" for e in row["errors"])
        print(f"  Line {row['line']:5d} | {messages}")

    return 0


def cmd_commit(args):
    """Commit a pending import session."""
    with FinanceService() as service:
        try:
            result = service.imports.commit(args.user_id, args.import_id)
        except AppError as e:
            print(f"Error ({e.status_code}): {e.message}")
            return 1

    summary = result["summary"]
    print(f"Imported {result['imported']} transactions")
    print(f"  Income:  {summary['income']:,.2f}")
    print(f"  Expense: {summary['expense']:,.2f}")
    print(f"  Balance: {summary['balance']:,.2f}")
    return 0


def cmd_imports(args):
    """List import sessions for a user."""
    with FinanceService() as service:
        try:
            history = service.imports.list_sessions(args.user_id, args.limit, args.offset)
        except AppError as e:
            print(f"Error: {e.message}")
            return 1

    if not history["items"]:
        print("No import sessions found.")
        return 0

    for item in history["items"]:
        status = "committed" if item["committedAt"] else "pending/expired"
        summary = item["summary"]
        print(
            f"  {item['id']} | {item['createdAt']} | {status:15s} | "
            f"{summary['validRows']}/{summary['totalRows']} valid | imported {summary['imported']}"
        )
    return 0


def cmd_cleanup(args):
    """Delete expired and old committed import sessions."""
    with FinanceService() as service:
        deleted = service.imports.cleanup(args.keep_days)
    print(f"Removed {deleted} import sessions")
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Control Finance - personal finance API and CSV import tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  controlfinance serve                          Run the HTTP API
  controlfinance dry-run -u 1 extrato.csv       Validate a CSV and open a session
  controlfinance commit -u 1 <import-id>        Commit a validated session
  controlfinance imports -u 1                   List import sessions
  controlfinance cleanup --keep-days 7          Remove stale import sessions
"""
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=config.HOST, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=config.PORT, help="Bind port")
    serve_parser.set_defaults(func=cmd_serve)

    # Dry-run command
    dry_run_parser = subparsers.add_parser("dry-run", help="Validate a CSV file")
    dry_run_parser.add_argument("file", help="CSV file to validate")
    dry_run_parser.add_argument("-u", "--user-id", type=int, required=True, help="Owner user ID")
    dry_run_parser.add_argument("-n", "--limit", type=int, default=20,
                                help="Max invalid rows to print")
    dry_run_parser.set_defaults(func=cmd_dry_run)

    # Commit command
    commit_parser = subparsers.add_parser("commit", help="Commit an import session")
    commit_parser.add_argument("import_id", help="Import session ID")
    commit_parser.add_argument("-u", "--user-id", type=int, required=True, help="Owner user ID")
    commit_parser.set_defaults(func=cmd_commit)

    # Imports command
    imports_parser = subparsers.add_parser("imports", help="List import sessions")
    imports_parser.add_argument("-u", "--user-id", type=int, required=True, help="Owner user ID")
    imports_parser.add_argument("-n", "--limit", type=int, default=20, help="Max results")
    imports_parser.add_argument("--offset", type=int, default=0, help="Results to skip")
    imports_parser.set_defaults(func=cmd_imports)

    # Cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Remove stale import sessions")
    cleanup_parser.add_argument("--keep-days", type=int,
                                default=config.IMPORT_SESSION_KEEP_COMMITTED_DAYS,
                                help="Days to keep committed sessions")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
