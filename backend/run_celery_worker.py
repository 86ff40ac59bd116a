#!/usr/bin/env python3
# backend/run_celery_worker.py
"""
Development Celery worker and beat runner for the booking housekeeping tasks.
"""
import os
from pathlib import Path
import subprocess
import sys

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

if __name__ == "__main__":
    queues = os.getenv("CELERY_QUEUES") or "celery,maintenance"
    print(f"Starting Celery worker with embedded beat, queues: {queues}")

    cmd = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "trafikskola.tasks.celery_app",
        "worker",
        "--beat",
        "--loglevel=info",
        "--concurrency=2",
        "-Q",
        queues,
    ]
    try:
        subprocess.run(cmd, check=True)
    except KeyboardInterrupt:
        print("\nCelery worker stopped")
