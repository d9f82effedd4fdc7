"""
HTTP control plane — seeds, inspects and cancels crawl jobs.

A lightweight Flask server in front of the job queue.  Crawling itself
happens in the consumer threads started by main.py; the only browser work
done here is the leaderboard seeding behind POST /crawl, which takes a
gate slot like any other session.

Usage:
    python -m mapcrawl.control_server [--config config.yaml] [--host H] [--port P]

Endpoints:
    GET    /health               liveness + uptime
    POST   /crawl                read the leaderboard, enqueue one job per user
    POST   /jobs                 {"username": "..."} enqueue a single job
    GET    /jobs                 queue summary
    GET    /jobs/<job_id>        one job's entry
    DELETE /jobs/<job_id>        cancel a pending job
    POST   /clear                drop every pending job
    POST   /requeue              move failed jobs back to pending
    GET    /results/<username>   stored documents for a user
"""

import argparse
import logging
import time

from flask import Flask, jsonify, request as flask_request

from mapcrawl.errors import RetriesExhausted
from mapcrawl.utils import system_stats

logger = logging.getLogger("mapcrawl")


def create_app(orchestrator) -> Flask:
    """Build the Flask app around an orchestrator (which owns queue, store and gate)."""
    app = Flask(__name__)
    start_time = time.time()
    queue = orchestrator.queue
    store = orchestrator.store

    # Suppress Flask's default request logging — we log manually
    logging.getLogger("werkzeug").setLevel(logging.WARNING)

    @app.route("/health", methods=["GET"])
    def health():
        uptime = int(time.time() - start_time)
        return jsonify({
            "status": "ok",
            "uptime": uptime,
            "gate": {"active": orchestrator.gate.active, "capacity": orchestrator.gate.capacity},
            "system": system_stats(),
        })

    @app.route("/crawl", methods=["POST"])
    def crawl():
        """Seed the queue from the leaderboard. Blocks until seeding finishes."""
        try:
            jobs = orchestrator.seed_usernames()
        except RetriesExhausted as e:
            logger.error(f"Error during leaderboard crawl: {e}")
            return jsonify({"success": False, "error": str(e.last_error)}), 502
        logger.info(f"CRAWL         seeded {len(jobs)} job(s)")
        return jsonify({"success": True, "enqueued": len(jobs)})

    @app.route("/jobs", methods=["POST"])
    def enqueue():
        body = flask_request.get_json(silent=True) or {}
        username = (body.get("username") or "").strip()
        if not username:
            return jsonify({"ok": False, "error": "missing username"}), 400
        job = queue.enqueue(username)
        logger.info(f"ENQUEUED      {username}  ({job.job_id[:8]})")
        return jsonify({"ok": True, "job_id": job.job_id}), 201

    @app.route("/jobs", methods=["GET"])
    def jobs_summary():
        return jsonify(queue.summary())

    @app.route("/jobs/<job_id>", methods=["GET"])
    def job_status(job_id):
        entry = queue.get(job_id)
        if entry is None:
            return jsonify({"ok": False, "error": "unknown job"}), 404
        return jsonify({"job_id": job_id, **entry})

    @app.route("/jobs/<job_id>", methods=["DELETE"])
    def cancel(job_id):
        if not queue.cancel(job_id):
            return jsonify({"ok": False, "error": "not pending or unknown"}), 409
        return jsonify({"ok": True})

    @app.route("/clear", methods=["POST"])
    def clear():
        removed = queue.clear()
        return jsonify({"ok": True, "removed": removed})

    @app.route("/requeue", methods=["POST"])
    def requeue():
        moved = queue.requeue_failed()
        logger.info(f"REQUEUE       {moved} failed job(s)")
        return jsonify({"ok": True, "requeued": moved})

    @app.route("/results/<username>", methods=["GET"])
    def results(username):
        docs = store.find(username)
        return jsonify({"username": username, "count": len(docs), "documents": docs})

    return app


def serve(app: Flask, host: str, port: int) -> None:
    """Run the app (threaded, no reloader)."""
    logger.info("=" * 60)
    logger.info(f"  Control plane running on {host}:{port}")
    logger.info("=" * 60)
    app.run(host=host, port=port, threaded=True, use_reloader=False)


def main():
    from mapcrawl.jobs import JobQueue
    from mapcrawl.orchestrator import JobOrchestrator
    from mapcrawl.store import ResultStore
    from mapcrawl.utils import load_config, setup_logging

    parser = argparse.ArgumentParser(description="Control plane for the leaderboard crawler")
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    parser.add_argument("--host", default=None, help="Bind address (default: from config)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: from config)")
    args = parser.parse_args()

    setup_logging()
    config = load_config(args.config)
    orchestrator = JobOrchestrator(
        config,
        JobQueue(config["queue_file"], config["stale_timeout"]),
        ResultStore(config["results_file"]),
    )
    serve(
        create_app(orchestrator),
        args.host or config["server_host"],
        args.port or config["server_port"],
    )


if __name__ == "__main__":
    main()
