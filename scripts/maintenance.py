#!/usr/bin/env python3
"""
Operator maintenance utility for the case store.

Seeds reference data and agents, purges expired idempotency records and
reports database health.
"""

import argparse
import json
import sqlite3
import sys
from pathlib import Path

# Add the repository root to sys.path so the script runs from a checkout
sys.path.insert(0, str(Path(__file__).parent.parent))

from casedesk.core.config import IDEMPOTENCY_RETENTION_SEC, get_db_path, validate_config
from casedesk.core.dao import AgentDirectory, CaseStore
from casedesk.core.db import health_check, init_db
from casedesk.core.idempotency import IdempotencyStore


def load_policies(path: Path):
    """Read a JSON list of {name, version, chunks: [{id, title?, text}]} documents."""
    with open(path, "r", encoding="utf-8") as f:
        policies = json.load(f)
    if not isinstance(policies, list):
        raise ValueError(f"{path} must contain a JSON list of policies")
    return policies


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Case store maintenance utilities",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --init-db                                  # Create tables
  %(prog)s --register-agent triage-bot --description "KYC triage agent"
  %(prog)s --seed-policies policies.json              # Load reference documents
  %(prog)s --purge-idempotency                        # Drop expired idempotency records
  %(prog)s --check-health --json                      # Health as JSON

Environment variables:
- DB_PATH=./data/casedesk.db (database location)
- IDEMPOTENCY_RETENTION_SEC=604800 (default purge window)
        """
    )

    parser.add_argument("--init-db", action="store_true", help="Create missing tables and indexes")
    parser.add_argument("--register-agent", metavar="NAME", help="Register an agent and print its API key")
    parser.add_argument("--description", default="", help="Description for --register-agent")
    parser.add_argument("--seed-policies", metavar="FILE", type=Path, help="Load policies from a JSON file")
    parser.add_argument("--purge-idempotency", action="store_true", help="Delete expired idempotency records")
    parser.add_argument(
        "--retention-sec",
        type=int,
        default=IDEMPOTENCY_RETENTION_SEC,
        help="Retention window for --purge-idempotency (seconds)"
    )
    parser.add_argument("--check-health", action="store_true", help="Report database and config health")
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")

    args = parser.parse_args(argv)

    operations_specified = (
        args.init_db or
        args.register_agent or
        args.seed_policies or
        args.purge_idempotency or
        args.check_health
    )
    if not operations_specified:
        parser.error("Must specify at least one maintenance operation")

    if args.register_agent and not args.description.strip():
        parser.error("--register-agent requires --description")

    results = {"db_path": get_db_path()}

    try:
        init_db()
        if args.init_db:
            results["init_db"] = "ok"

        if args.register_agent:
            agent, api_key = AgentDirectory().register(args.register_agent.strip(), args.description.strip())
            results["agent"] = {"id": agent.id, "name": agent.name, "api_key": api_key}

        if args.seed_policies:
            store = CaseStore()
            seeded = []
            for doc in load_policies(args.seed_policies):
                policy = store.add_policy(doc["name"], doc["version"], doc.get("chunks", []))
                seeded.append({"id": policy.id, "name": policy.name, "version": policy.version,
                               "chunks": len(policy.chunks)})
            results["policies"] = seeded

        if args.purge_idempotency:
            results["idempotency_purged"] = IdempotencyStore().purge_expired(args.retention_sec)

        if args.check_health:
            results["db_health"] = health_check()
            results["config_issues"] = validate_config()

    except (OSError, ValueError, KeyError, sqlite3.Error) as e:
        print(f"ERROR: Maintenance operation failed: {e}")
        return 1

    if args.json:
        print(json.dumps(results, indent=2, default=str))
    else:
        print(f"Database: {results['db_path']}")
        if "agent" in results:
            agent = results["agent"]
            print(f"Registered agent {agent['name']} ({agent['id']})")
            print(f"  API key: {agent['api_key']}  (save it, it cannot be retrieved later)")
        for policy in results.get("policies", []):
            print(f"Seeded policy {policy['name']} v{policy['version']} ({policy['id']}, {policy['chunks']} chunks)")
        if "idempotency_purged" in results:
            print(f"Purged {results['idempotency_purged']} expired idempotency records")
        if "db_health" in results:
            print(f"DB health: {'healthy' if results['db_health'] else 'UNHEALTHY'}")
            for issue in results["config_issues"]:
                print(f"  - {issue}")

    if results.get("db_health") is False:
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
