#!/usr/bin/env python3
"""
Keeper runner: polls the repayment scheduler and performs due upkeep.

Usage:
  run_keeper.py                  # loop every KEEPER_INTERVAL_SEC (needs KEEPER_ENABLED=true)
  run_keeper.py --once           # single check/perform cycle, then exit
"""

import argparse
import sys
from pathlib import Path

# Add the project root to sys.path so the package imports without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from vaultfund.core import keeper
from vaultfund.core.config import get_keeper_interval, is_keeper_enabled, load_config
from vaultfund.core.engine import FundingEngine


def main():
    """Main entry point for keeper script."""
    parser = argparse.ArgumentParser(description="Run the repayment keeper loop")
    parser.add_argument("--once", action="store_true", help="Run one upkeep cycle and exit")
    parser.add_argument("--interval", type=int, default=None, help="Poll interval in seconds")
    parser.add_argument("--db-path", default=None, help="Database path (defaults to VAULTFUND_DB_PATH)")
    args = parser.parse_args()

    overrides = {"db_path": args.db_path} if args.db_path else {}
    engine = FundingEngine(load_config(**overrides))

    if args.once:
        payments = keeper.keeper_cycle(engine)
        print(f"Processed {len(payments)} repayment(s)")
        for payment in payments:
            print(f"  vault {payment.vault_id} month {payment.month}: {payment.amount}")
        return

    if not is_keeper_enabled():
        print("Keeper requires KEEPER_ENABLED=true (or use --once)")
        sys.exit(1)

    interval = args.interval or get_keeper_interval()
    try:
        keeper.register_task("repayment_upkeep", interval, lambda: keeper.keeper_cycle(engine), engine.config)
        print(f"Polling upkeep every {interval} seconds (tasks: {', '.join(keeper.list_tasks())})")
        keeper.start()
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
        keeper.stop()
    except ValueError as e:
        print(f"Critical error: {e}")
        keeper.stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
