#!/usr/bin/env python3
"""Delete expired sessions from the configured session store.

Usage:
    # Using environment variables:
    SESSION_STORE=postgres DATABASE_URL=postgresql://... python scripts/purge_sessions.py

    # Or with command line args:
    python scripts/purge_sessions.py --store memory --state-dir /srv/authsession

Environment Variables:
    SESSION_STORE: memory, postgres or redis
    DATABASE_URL: PostgreSQL connection string (postgres store)
    STATE_FS_ROOT: Snapshot directory (memory store)

Redis keys expire on their own, so against a Redis store this reports 0.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge_sessions() -> int:
    # Import here to avoid loading config before env vars are set
    from authsession.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return runtime.sessions.purge_expired()
    finally:
        runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Purge expired authentication sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--store",
        choices=["memory", "postgres", "redis"],
        default=os.environ.get("SESSION_STORE"),
        help="Session store backend (or set SESSION_STORE env var)",
    )
    parser.add_argument(
        "--state-dir",
        default=os.environ.get("STATE_FS_ROOT"),
        help="Memory store snapshot directory (or set STATE_FS_ROOT env var)",
    )

    args = parser.parse_args()

    if args.store:
        os.environ["SESSION_STORE"] = args.store
    if args.state_dir:
        os.environ["STATE_FS_ROOT"] = args.state_dir
    if os.environ.get("SESSION_STORE", "memory") == "memory" and not args.state_dir:
        print("Error: the memory store needs --state-dir or STATE_FS_ROOT to purge anything")
        sys.exit(1)

    # Nothing to refresh in a one-shot job
    os.environ["SESSION_REFRESH_IN_BACKGROUND"] = "false"

    try:
        purged = purge_sessions()
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Purged {purged} expired session(s)")


if __name__ == "__main__":
    main()
