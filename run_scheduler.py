#!/usr/bin/env python3
"""
Standalone runner for the settlement scheduler (systemd, supervisor, cron).

Usage:
    python run_scheduler.py              # Run in foreground
    python run_scheduler.py --once       # Drain one batch and exit (cron)
    python run_scheduler.py --stats      # Print queue stats
"""
import sys

from settlement_engine.cli import main

if __name__ == '__main__':
    sys.exit(main())
