#!/usr/bin/env python3
"""
Expire PENDING solicitations whose deadline has passed.

Expiry is normally lazy (a solicitation is expired when something touches
it).  This sweep is the periodic alternative for deployments that want
EXPIRED rows and ``solicitation.expired`` events without waiting for a read.

Usage:
  python3 scripts/expire_overdue.py [--database-url URL] [--settings FILE] [--limit N]
"""

from __future__ import annotations

import argparse
import sys


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Expire overdue approval solicitations")
    p.add_argument("--settings", default=None, help="YAML settings file")
    p.add_argument(
        "--database-url",
        default=None,
        help="Database URL (overrides settings and APPROVAL_DATABASE_URL)",
    )
    p.add_argument("--limit", type=int, default=None, help="Maximum solicitations to expire")
    p.add_argument("--log-level", default="INFO", help="Log level for JSON logs on stderr")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    from approval_config.settings import load_settings
    from approval_kernel.db.engine import get_session_factory, init_engine_from_url
    from approval_kernel.logging_config import configure_logging
    from approval_services.orchestrator import ApprovalOrchestrator

    configure_logging(level=args.log_level)
    settings = load_settings(args.settings)
    database_url = args.database_url or settings.database_url
    init_engine_from_url(database_url)

    orchestrator = ApprovalOrchestrator(get_session_factory(), settings=settings)
    try:
        expired = orchestrator.expire_overdue(limit=args.limit)
    finally:
        orchestrator.close()

    print(f"Expired {len(expired)} solicitation(s)")
    for solicitation in expired:
        print(f"  {solicitation.code}  {solicitation.action_type}  expired_at={solicitation.expires_at.isoformat()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
