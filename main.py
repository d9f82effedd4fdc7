"""
Mapillary Leaderboard Crawler — Entry Point

Usage:
    python main.py                       # consume queued jobs until Ctrl+C
    python main.py --seed                # read the leaderboard first, then consume
    python main.py --serve               # also run the HTTP control plane
    python main.py --once                # drain the queue once and exit
    python main.py --config path/to/config.yaml
"""

import argparse
import os
import signal
import sys
import threading

from mapcrawl.utils import setup_logging, load_config, system_stats
from mapcrawl.errors import RetriesExhausted
from mapcrawl.jobs import JobQueue
from mapcrawl.store import ResultStore
from mapcrawl.orchestrator import JobOrchestrator
from mapcrawl.control_server import create_app, serve


def _hard_exit(*_):
    """A second Ctrl+C during shutdown exits immediately."""
    print("\n⚠ Ctrl+C pressed again. Exiting...")
    os._exit(1)


def main():
    # ── Parse arguments ──────────────────────────────────────────────
    parser = argparse.ArgumentParser(
        description="Crawl geotagged images of Mapillary leaderboard users"
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to config.yaml (default: ./config.yaml)"
    )
    parser.add_argument("--seed", action="store_true",
                        help="Enqueue the leaderboard users before consuming")
    parser.add_argument("--serve", action="store_true",
                        help="Run the HTTP control plane alongside the consumers")
    parser.add_argument("--once", action="store_true",
                        help="Process every queued job once, then exit")
    args = parser.parse_args()

    # ── Setup ────────────────────────────────────────────────────────
    logger = setup_logging()
    config = load_config(args.config)

    logger.info("Configuration loaded:")
    logger.info(f"  Leaderboard:      {config['leaderboard_url']}")
    logger.info(f"  Concurrency:      {config['concurrency']}")
    logger.info(f"  Max attempts:     {config['max_attempts']} (base delay {config['base_delay']}s)")
    logger.info(f"  Max next steps:   {config['max_steps']}")
    logger.info(f"  Headless:         {config['headless']}")
    logger.info(f"  Proxy:            {'enabled' if config['proxy'] else 'disabled'}")
    logger.info(f"  Jitter:           {'enabled' if config['jitter']['enabled'] else 'disabled'}")
    logger.info(f"  Queue file:       {config['queue_file']}")
    logger.info(f"  Results file:     {config['results_file']}")

    queue = JobQueue(config["queue_file"], stale_timeout=config["stale_timeout"])
    store = ResultStore(config["results_file"])
    orchestrator = JobOrchestrator(config, queue, store)

    # ── Seed from the leaderboard ────────────────────────────────────
    if args.seed:
        try:
            orchestrator.seed_usernames()
        except RetriesExhausted as e:
            logger.error(f"Leaderboard seeding failed: {e}")
            if not len(queue):
                sys.exit(1)

    # ── Control plane ────────────────────────────────────────────────
    if args.serve:
        app = create_app(orchestrator)
        server_thread = threading.Thread(
            target=serve,
            args=(app, config["server_host"], config["server_port"]),
            daemon=True,
            name="control-plane",
        )
        server_thread.start()

    # ── Consume ──────────────────────────────────────────────────────
    if args.once:
        processed = orchestrator.run_once()
        logger.info(f"Queue drained — {processed} job(s) processed: {orchestrator.stats}")
        return

    stop_event = threading.Event()
    orchestrator.start(stop_event)
    try:
        while not stop_event.wait(60):
            stats = system_stats()
            logger.info(
                f"Queue: {queue.summary()}  |  Outcomes: {orchestrator.stats}  |  "
                f"CPU: {stats['cpu_percent']:.0f}%  Free memory: {stats['available_gb']:.2f} GB"
            )
    except KeyboardInterrupt:
        logger.info("Ctrl+C detected. Shutting down...")
        signal.signal(signal.SIGINT, _hard_exit)
        stop_event.set()
        orchestrator.join(timeout=5)


if __name__ == "__main__":
    main()
