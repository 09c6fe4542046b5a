"""
GenProof worker entry point.

Usage:
    python -m genproof.worker [OPTIONS]

Options:
    --concurrency N     Concurrent workers (default: from config)
    --poll-interval N   Seconds to block waiting for a job (default: from config)
"""
from __future__ import annotations

import argparse
import sys

from .loop import run_worker


def main() -> int:
    """Main entry point for worker CLI."""
    parser = argparse.ArgumentParser(
        description="GenProof Worker - generates proofs for queued jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run with default settings
    python -m genproof.worker

    # Run eight workers against a local redis
    GENPROOF_KV_URL=redis://localhost:6379/0 python -m genproof.worker --concurrency 8
        """,
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of concurrent workers (default: from config)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds to block waiting for a queued job (default: from config)",
    )
    args = parser.parse_args()

    try:
        stats = run_worker(concurrency=args.concurrency, poll_interval=args.poll_interval)
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        print(f"Worker failed: {e}", file=sys.stderr)
        return 1

    print(f"Worker stopped: processed={stats['processed']} failed={stats['failed']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
