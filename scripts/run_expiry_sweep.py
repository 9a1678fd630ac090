#!/usr/bin/env python3
"""
Standalone approval sweep: expires stale approvals and sends reminders on a
fixed interval, for deployments that run the API without APPROVAL_SWEEP_ENABLED.
"""

import argparse
import sys
from pathlib import Path

# Add the project root to sys.path so the package imports without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from actionengine.api.main import build_engine
from actionengine.core import heartbeat
from actionengine.core.config import get_sweep_interval, is_approval_sweep_enabled


def main():
    """Main entry point for the sweep script."""
    parser = argparse.ArgumentParser(description="Run approval expiry and reminder sweeps")
    parser.add_argument("--db", default=None, help="SQLite database path (default: DB_PATH)")
    parser.add_argument("--interval", type=int, default=None,
                        help="Seconds between sweeps (default: APPROVAL_SWEEP_INTERVAL_SEC)")
    parser.add_argument("--once", action="store_true", help="Run each sweep once and exit")
    args = parser.parse_args()

    engine = build_engine(args.db)

    if args.once:
        expired = engine.expire_approvals()
        reminded = engine.send_reminders()
        print(f"Expired {expired} approval(s), sent {reminded} reminder(s)")
        engine.shutdown()
        return

    if not is_approval_sweep_enabled():
        print("Sweep loop requires APPROVAL_SWEEP_ENABLED=true (or use --once)")
        engine.shutdown()
        sys.exit(1)

    try:
        interval = args.interval or get_sweep_interval()
        heartbeat.register_approval_sweeps(engine, interval)
        print(f"Sweeping approvals every {interval} seconds")

        heartbeat.start()

    except KeyboardInterrupt:
        print("\nShutting down...")
        heartbeat.stop()
    except Exception as e:
        print(f"Critical error: {e}")
        heartbeat.stop()
        sys.exit(1)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
