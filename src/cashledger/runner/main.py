"""
CLI main entry point.
"""

import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path

from ..audit import Auditor
from ..config import Config, create_default_config, load_config
from ..dedupe import DuplicateDetector
from ..errors import CashLedgerError
from ..ledger import CashLedger
from ..review import ReviewQueue
from ..schemas.categories import display_name
from ..schemas.ledger import parse_date, to_money
from ..services import StatementImporter
from ..state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_cli() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cashledger",
        description="Classify, reconcile and audit bank transactions into a cash ledger",
    )

    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init command
    init_parser = subparsers.add_parser("init", help="Write a default config and create the DB")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )

    # company command
    company_parser = subparsers.add_parser("company", help="Manage companies")
    company_sub = company_parser.add_subparsers(dest="action", help="Company action")
    create_parser = company_sub.add_parser("create", help="Create a company")
    create_parser.add_argument("name", type=str, help="Company name")
    create_parser.add_argument(
        "--cash",
        type=str,
        default="0",
        help="Opening cash balance (default: 0)",
    )
    show_parser = company_sub.add_parser("show", help="Show a company")
    show_parser.add_argument("company_id", type=int)
    cash_parser = company_sub.add_parser("set-cash", help="Declare the current cash balance")
    cash_parser.add_argument("company_id", type=int)
    cash_parser.add_argument("amount", type=str)

    # import command
    import_parser = subparsers.add_parser(
        "import", help="Import a JSON file of normalized statement rows"
    )
    import_parser.add_argument("company_id", type=int)
    import_parser.add_argument("file", type=Path, help="JSON array of rows")
    import_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full batch output as JSON",
    )

    # review command
    review_parser = subparsers.add_parser("review", help="Work the review queue")
    review_sub = review_parser.add_subparsers(dest="action", help="Review action")
    list_parser = review_sub.add_parser("list", help="List pending transactions")
    list_parser.add_argument("company_id", type=int)
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--limit", type=int, default=20)
    approve_parser = review_sub.add_parser("approve", help="Approve a transaction")
    approve_parser.add_argument("company_id", type=int)
    approve_parser.add_argument("txn_id", type=int)
    approve_parser.add_argument("--notes", type=str)
    reject_parser = review_sub.add_parser("reject", help="Reject a transaction")
    reject_parser.add_argument("company_id", type=int)
    reject_parser.add_argument("txn_id", type=int)
    reject_parser.add_argument("--reason", type=str)
    recat_parser = review_sub.add_parser("recategorize", help="Change the category")
    recat_parser.add_argument("company_id", type=int)
    recat_parser.add_argument("txn_id", type=int)
    recat_parser.add_argument("category", type=str, help="Category value, e.g. Cloud")
    recat_parser.add_argument("--notes", type=str)
    bulk_parser = review_sub.add_parser("bulk-approve", help="Approve several transactions")
    bulk_parser.add_argument("company_id", type=int)
    bulk_parser.add_argument("txn_ids", type=int, nargs="+")

    # audit command
    audit_parser = subparsers.add_parser(
        "audit", help="Run anomaly detection, integrity checks and alerts"
    )
    audit_parser.add_argument("company_id", type=int)
    audit_parser.add_argument(
        "--fix",
        action="store_true",
        help="Apply automatic fixes for failed integrity checks",
    )
    audit_parser.add_argument(
        "--as-of",
        type=str,
        help="Audit date (default: today)",
    )

    # dedupe command
    dedupe_parser = subparsers.add_parser("dedupe", help="Find stored duplicate transactions")
    dedupe_parser.add_argument("company_id", type=int)
    dedupe_parser.add_argument(
        "--remove",
        action="store_true",
        help="Delete duplicates (keeps the oldest of each group)",
    )

    # status command
    subparsers.add_parser("status", help="Show companies, runway and review backlog")

    return parser


def cmd_init(config_path: Path, config: Config, force: bool = False) -> int:
    """Write a default config file and initialize the database."""
    if config_path.exists() and not force:
        print(f"⚠️  {config_path} already exists (use --force to overwrite)")
    else:
        create_default_config(config_path)
        print(f"✓ Wrote {config_path}")

    StateStore(config.state_db_path)
    print(f"✓ Database ready at {config.state_db_path}")
    return 0


def cmd_company(config: Config, parsed: argparse.Namespace) -> int:
    """Create, show or update a company."""
    store = StateStore(config.state_db_path)

    if parsed.action == "create":
        company_id = store.create_company(
            parsed.name, to_money(parsed.cash, field_name="cash"), config.currency
        )
        print(f"✓ Created company {company_id}: {parsed.name}")
        return 0

    if parsed.action == "show":
        company = store.require_company(parsed.company_id)
        metrics = CashLedger(store, config).recalculate(company.id)
        print(f"\n🏢 {company.name} (#{company.id})")
        print("=" * 40)
        print(f"  Cash balance:  {company.cash_balance} {company.currency}")
        print(f"  Monthly burn:  {metrics.monthly_burn}")
        runway = "∞" if metrics.is_unbounded else f"{metrics.runway:.1f} months"
        print(f"  Runway:        {runway} ({metrics.tier.value})")
        print(f"  Transactions:  {store.count_transactions(company.id)}")
        print()
        return 0

    if parsed.action == "set-cash":
        store.require_company(parsed.company_id)
        store.set_cash_balance(parsed.company_id, to_money(parsed.amount))
        print(f"✓ Cash balance of company {parsed.company_id} set to {parsed.amount}")
        return 0

    print("❌ Missing company action (create, show, set-cash)")
    return 1


def cmd_import(config: Config, company_id: int, file: Path, as_json: bool = False) -> int:
    """Import normalized statement rows from a JSON file."""
    try:
        with open(file) as f:
            rows = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Cannot read {file}: {e}")
        return 1
    if not isinstance(rows, list):
        print(f"❌ {file} must contain a JSON array of rows")
        return 1

    store = StateStore(config.state_db_path)
    store.require_company(company_id)

    print(f"📥 Importing {len(rows)} row(s) for company {company_id}...")
    result = StatementImporter(store, config).import_rows(company_id, rows)

    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print()
        print("📊 Import Results")
        print("=" * 40)
        print(f"  Status:              {result.state.value}")
        print(f"  New transactions:    {result.new_transactions}")
        print(f"  Duplicates skipped:  {result.duplicates_skipped}")
        print(f"  Rows skipped:        {result.rows_skipped}")
        print(f"  Needs review:        {result.needs_review_count}")
        print(f"  Invoices paid:       {result.invoices_paid}")
        print(f"  Bills paid:          {result.bills_paid}")
        print(f"  Cash change:         {result.cash_balance_change}")
        print(f"  New cash balance:    {result.new_cash_balance}")
        print(f"  Avg confidence:      {result.average_confidence:.1f}")
        print(f"  Duration:            {result.duration_ms}ms")
        print()

    if result.errors:
        print("⚠️  Errors encountered:")
        for error in result.errors:
            print(f"   - {error}")

    if result.success:
        print("✓ Import completed")
        return 0
    print("❌ Import failed")
    return 1


def cmd_review(config: Config, parsed: argparse.Namespace) -> int:
    """Review queue actions."""
    store = StateStore(config.state_db_path)
    queue = ReviewQueue(store, config)

    if parsed.action == "list":
        pending = queue.pending(parsed.company_id, page=parsed.page, limit=parsed.limit)
        stats = queue.stats(parsed.company_id)
        print(f"\n📝 Pending review: {stats['pending_count']} (page {parsed.page})")
        print("=" * 60)
        for txn in pending:
            reason = txn.review_reason.value if txn.review_reason else "-"
            print(
                f"  [{txn.id}] {txn.date} {txn.amount:>12} {display_name(txn.category):<22} "
                f"{txn.confidence_score:>3}% {reason}"
            )
            print(f"        {txn.description}")
        print()
        return 0

    if parsed.action == "bulk-approve":
        result = queue.bulk_approve(parsed.company_id, parsed.txn_ids)
        print(f"✓ Approved {result.success_count} transaction(s)")
        for txn_id, error in result.failed.items():
            print(f"   ❌ {txn_id}: {error}")
        return 0 if not result.failed else 1

    if parsed.action == "approve":
        txn = queue.approve(parsed.company_id, parsed.txn_id, notes=parsed.notes)
    elif parsed.action == "reject":
        txn = queue.reject(parsed.company_id, parsed.txn_id, reason=parsed.reason)
    elif parsed.action == "recategorize":
        try:
            txn = queue.recategorize(
                parsed.company_id, parsed.txn_id, parsed.category, notes=parsed.notes
            )
        except ValueError:
            print(f"❌ Unknown category: {parsed.category}")
            return 1
    else:
        print("❌ Missing review action (list, approve, reject, recategorize, bulk-approve)")
        return 1

    print(f"✓ Transaction {txn.id} is now {txn.review_status.value}")
    return 0


def cmd_audit(config: Config, company_id: int, fix: bool = False, as_of: str | None = None) -> int:
    """Run the periodic audit for a company."""
    store = StateStore(config.state_db_path)
    audit_date = parse_date(as_of) if as_of else date.today()

    print(f"🔎 Auditing company {company_id} as of {audit_date}...")
    result = Auditor(store, config).run(company_id, as_of=audit_date, fix=fix)

    print()
    print(f"⚠️  Anomalies: {len(result.anomalies)}")
    for anomaly in result.anomalies:
        print(f"   - [{anomaly.severity.value}] {anomaly.message}")

    print()
    print(f"🧮 Integrity: {result.integrity.overall_status.value}")
    for check in result.integrity.checks:
        mark = "✓" if check.passed else "✗"
        print(f"   {mark} {check.check.value}: {check.details}")

    if result.fixes:
        print()
        print(f"🔧 Fixed: {', '.join(result.fixes.fixed) or 'nothing'}")
        for name in result.fixes.failed:
            print(f"   ❌ {name}: {result.fixes.details[name]}")

    print()
    overdue = result.overdue
    print(f"📅 Overdue: {len(overdue.invoices)} invoices, {len(overdue.bills)} bills")
    runway = "∞" if result.runway.is_unbounded else f"{result.runway.runway:.1f} months"
    print(f"💰 Runway: {runway} ({result.runway.tier.value})")
    print(f"🔔 New alerts: {result.alerts_created}")
    print()
    return 0


def cmd_dedupe(config: Config, company_id: int, remove: bool = False) -> int:
    """Scan for, and optionally remove, stored duplicates."""
    store = StateStore(config.state_db_path)
    store.require_company(company_id)
    detector = DuplicateDetector(store, config.duplicates)

    for group in detector.find_existing_duplicates(company_id):
        keeper = group.keeper
        print(f"  🔁 keep [{keeper.id}] {keeper.date} {keeper.amount} {keeper.description}")
        for extra in group.extras:
            print(f"       dup [{extra.id}] {extra.date} {extra.amount} {extra.description}")

    report = detector.remove_duplicates(company_id, dry_run=not remove)
    if remove:
        print(
            f"\n✓ Removed {report.duplicates_removed} duplicate(s), "
            f"cash reversed {report.cash_reversed}"
        )
    else:
        print(f"\n✓ Found {report.duplicates_found} duplicate(s) (use --remove to delete)")
    return 0


def cmd_status(config: Config) -> int:
    """Show companies, runway and review backlog."""
    store = StateStore(config.state_db_path)
    ledger = CashLedger(store, config)

    print("\n📊 Ledger Status")
    print("=" * 40)
    for company in store.list_companies():
        metrics = ledger.recalculate(company.id)
        pending = store.review_status_counts(company.id).get("pending_review", 0)
        runway = "∞" if metrics.is_unbounded else f"{metrics.runway:.1f}"
        print(f"  [{company.id}] {company.name}")
        print(f"      Cash:            {company.cash_balance} {company.currency}")
        print(f"      Runway (months): {runway} ({metrics.tier.value})")
        print(f"      Pending review:  {pending}")
    print()
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_cli()
    parsed = parser.parse_args(args)

    setup_logging(parsed.verbose)

    if not parsed.command:
        parser.print_help()
        return 1

    # Load config
    try:
        config = load_config(parsed.config)
    except Exception as e:
        print(f"❌ Failed to load config: {e}")
        return 1

    problems = config.validate()
    if problems:
        print("❌ Invalid configuration:")
        for problem in problems:
            print(f"   - {problem}")
        return 1

    # Route to command
    try:
        if parsed.command == "init":
            return cmd_init(parsed.config, config, parsed.force)
        elif parsed.command == "company":
            return cmd_company(config, parsed)
        elif parsed.command == "import":
            return cmd_import(config, parsed.company_id, parsed.file, parsed.json)
        elif parsed.command == "review":
            return cmd_review(config, parsed)
        elif parsed.command == "audit":
            return cmd_audit(config, parsed.company_id, parsed.fix, parsed.as_of)
        elif parsed.command == "dedupe":
            return cmd_dedupe(config, parsed.company_id, parsed.remove)
        elif parsed.command == "status":
            return cmd_status(config)
        else:
            parser.print_help()
            return 1
    except CashLedgerError as e:
        print(f"❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
