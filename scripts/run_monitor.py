#!/usr/bin/env python3
"""Run the proactive monitor and margin analysis.

Usage:
    pip install -e .

    # One pass over every active partner
    python scripts/run_monitor.py

    # Keep running every MONITOR_INTERVAL_SECONDS
    python scripts/run_monitor.py --continuous

    # Three passes, ten seconds apart, against the REST store
    STORE_BACKEND=rest python scripts/run_monitor.py --continuous --runs=3 --interval=10
"""

import asyncio

from fiscal_flow.scheduler import main

if __name__ == "__main__":
    asyncio.run(main())
