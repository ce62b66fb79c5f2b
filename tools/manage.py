#!/usr/bin/env python3
"""
TraceLedger Management CLI

Commands for operating the ledger:
- init-db: Create the PostgreSQL tables
- verify-event: Re-verify one event (locally and against the ledger)
- reanchor: Retry anchoring for one event, or every unverified event
- trace: Print a product's chain of custody
- generate-key: Generate a secp256k1 signing key for chain anchoring
- health-check: Run store and anchor health checks

Commands other than init-db and generate-key act on the configured store
(DATABASE_URL / DATABASE_HOST); against the in-memory store they see an
empty ledger.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage verify-event 6f1c...
    python -m tools.manage reanchor --all
    python -m tools.manage trace 3b2a... --verify
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _services():
    from traceledger.bootstrap import build_services
    return build_services()


def cmd_init_db(args):
    """Create tables and indexes."""
    import psycopg2

    from traceledger.db.config import get_database_config
    from traceledger.db.postgres import PostgresTraceStore

    config = get_database_config()
    if config is None:
        print("Error: set DATABASE_URL or DATABASE_HOST first")
        return 1

    print(f"Initializing schema on {config.to_url(include_password=False)} ...")
    store = PostgresTraceStore(lambda: psycopg2.connect(config.to_dsn()))
    store.init_schema()
    print("[OK] Schema ready")
    return 0


def cmd_verify_event(args):
    """Re-verify one event."""
    from traceledger.core import NotFoundError

    services = _services()

    async def run():
        try:
            return await services.integrity.verify_event(
                args.event_id, check_chain=not args.local_only
            )
        finally:
            await services.aclose()

    try:
        result = asyncio.run(run())
    except NotFoundError as e:
        print(f"Error: {e}")
        return 1

    print(f"Event:          {result.event_id}")
    print(f"Stored hash:    {result.stored_hash}")
    print(f"Computed hash:  {result.computed_hash}")
    print(f"Anchor status:  {result.anchor_status.value if result.anchor_status else 'not anchored'}")
    print(f"Transaction:    {result.transaction_ref or '-'}")
    print(f"Proof hash:     {result.proof_hash_matches}")
    print(f"Chain verified: {result.chain_verified}")
    if result.is_valid and result.proof_hash_matches is not False and result.chain_verified is not False:
        print(f"[OK] {result.message}")
        return 0
    print(f"[FAIL] {result.message}")
    return 1


def cmd_reanchor(args):
    """Retry anchoring."""
    from traceledger.core import NotFoundError

    if not args.all and not args.event_id:
        print("Error: give an event id or --all")
        return 1

    services = _services()

    async def run():
        try:
            if args.all:
                return await services.integrity.reanchor_pending(limit=args.limit)
            return [await services.integrity.reanchor_event(args.event_id)]
        finally:
            await services.aclose()

    try:
        results = asyncio.run(run())
    except NotFoundError as e:
        print(f"Error: {e}")
        return 1

    failures = 0
    for result in results:
        if result.anchored:
            print(f"[OK]   {result.event.id} -> {result.anchor_proof.transaction_ref}")
        else:
            failures += 1
            print(f"[FAIL] {result.event.id}: {result.anchor_error}")

    print(f"\n{len(results) - failures}/{len(results)} events anchored")
    return 1 if failures else 0


def cmd_trace(args):
    """Print a product's chain of custody."""
    from traceledger.core import NotFoundError

    services = _services()
    try:
        trace = services.custody.get_trace(args.product_id, verify_integrity=args.verify)
    except NotFoundError as e:
        print(f"Error: {e}")
        return 1
    finally:
        asyncio.run(services.aclose())

    if args.json:
        print(json.dumps(trace.model_dump(mode="json"), indent=2))
        return 0

    print(f"=== Trace for product {trace.product_id} ===\n")
    for entry in trace.events:
        event = entry.event
        who = entry.performer.name if entry.performer and entry.performer.name else event.performed_by
        mark = "anchored" if entry.anchor_proof else "UNANCHORED"
        line = f"{event.timestamp.isoformat()}  {event.event_type.value:<13} {who:<24} {mark}"
        if entry.integrity_valid is False:
            line += "  INTEGRITY FAILURE"
        print(line)

    s = trace.summary
    print(
        f"\nEvents: {s.total_events}  Verified: {s.verified_events}  "
        f"Anchored: {s.anchored_events}  Participants: {s.participants_count}"
    )
    if args.verify:
        print(f"Integrity failures: {s.integrity_failures}")
        return 1 if s.integrity_failures else 0
    return 0


def cmd_generate_key(args):
    """Generate an anchoring key."""
    from eth_account import Account

    account = Account.create()

    print("\n[OK] Anchoring key generated")
    print(f"  Address (fund this account): {account.address}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {account.key.hex()}")
    print("\n  Set this environment variable:")
    print(f"  TRACELEDGER_CHAIN_PRIVATE_KEY={account.key.hex()}")
    return 0


def cmd_health_check(args):
    """Run health checks."""
    from traceledger.observability import check_health

    print("=== TraceLedger Health Check ===\n")
    services = _services()
    try:
        status = check_health(store=services.store, anchor_client=services.anchor_client)
    finally:
        asyncio.run(services.aclose())

    for name, check in status.checks.items():
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name:<12} [{check['status'].upper()}] {details}")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main():
    parser = argparse.ArgumentParser(
        description="TraceLedger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # init-db
    subparsers.add_parser("init-db", help="Create PostgreSQL tables")

    # verify-event
    p_verify = subparsers.add_parser("verify-event", help="Re-verify one event")
    p_verify.add_argument("event_id", help="Event id")
    p_verify.add_argument("--local-only", action="store_true", help="Skip the ledger check")

    # reanchor
    p_reanchor = subparsers.add_parser("reanchor", help="Retry anchoring")
    p_reanchor.add_argument("event_id", nargs="?", help="Event id")
    p_reanchor.add_argument("--all", action="store_true", help="Every unverified event")
    p_reanchor.add_argument("--limit", type=int, default=100, help="Max events with --all")

    # trace
    p_trace = subparsers.add_parser("trace", help="Print a product's chain of custody")
    p_trace.add_argument("product_id", help="Product id")
    p_trace.add_argument("--verify", action="store_true", help="Recompute every event hash")
    p_trace.add_argument("--json", action="store_true", help="Print JSON")

    # generate-key
    subparsers.add_parser("generate-key", help="Generate a chain anchoring key")

    # health-check
    subparsers.add_parser("health-check", help="Run health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "init-db": cmd_init_db,
        "verify-event": cmd_verify_event,
        "reanchor": cmd_reanchor,
        "trace": cmd_trace,
        "generate-key": cmd_generate_key,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
