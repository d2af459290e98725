#!/usr/bin/env python3
"""
Create the approval tables and seed configurations from an approval set.

Action types that already have an active configuration are skipped, so the
script is safe to re-run after editing the set.

Usage:
  python3 scripts/seed_approvals.py [--database-url URL] [--settings FILE] [--set FILE]
"""

from __future__ import annotations

import argparse
import sys


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Seed approval configurations from YAML")
    p.add_argument("--settings", default=None, help="YAML settings file")
    p.add_argument("--database-url", default=None, help="Database URL")
    p.add_argument("--set", dest="set_path", default=None, help="Approval set YAML (default: bundled set)")
    p.add_argument("--log-level", default="INFO", help="Log level for JSON logs on stderr")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from approval_config.loader import DEFAULT_SET_PATH, load_approval_set
    from approval_config.settings import load_settings
    from approval_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from approval_kernel.logging_config import configure_logging
    from approval_services.orchestrator import ApprovalOrchestrator

    configure_logging(level=args.log_level)
    settings = load_settings(args.settings)
    init_engine_from_url(args.database_url or settings.database_url)
    create_tables()

    approval_set = load_approval_set(args.set_path or DEFAULT_SET_PATH)
    print(f"Approval set: {approval_set.name} v{approval_set.version}")
    print(f"  checksum: {approval_set.checksum[:16]}...")

    orchestrator = ApprovalOrchestrator(get_session_factory(), settings=settings)
    try:
        created = orchestrator.seed(approval_set)
    finally:
        orchestrator.close()

    print(f"Created {len(created)} configuration(s)")
    for config in created:
        print(f"  {config.action_type}: {config.strategy.value} (min {config.min_approvals})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
