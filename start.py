#!/usr/bin/env python3
"""
NovelForge Service Entrypoint

This script determines which process to run based on the SERVICE_TYPE
environment variable.

SERVICE_TYPE values:
  - web (default): Run the FastAPI web server via gunicorn
  - worker: Run the standalone pipeline worker (set EMBEDDED_WORKER=false on web)
"""

import os
import sys

SERVICE_TYPE = os.environ.get("SERVICE_TYPE", "web")
PORT = os.environ.get("PORT", "8080")

print("=" * 50)
print(f"NovelForge Service: {SERVICE_TYPE}")
print("=" * 50)

if SERVICE_TYPE == "web":
    print("Starting web server (gunicorn)...")
    # One web worker: the embedded queue worker and stale-job recovery
    # assume a single process owns the job table.
    cmd = [
        "gunicorn", "novelforge.api.main:app",
        "--workers", "1",
        "--worker-class", "uvicorn.workers.UvicornWorker",
        "--bind", f"0.0.0.0:{PORT}",
        "--timeout", "900",
        "--graceful-timeout", "120"
    ]
elif SERVICE_TYPE == "worker":
    print("Starting pipeline worker...")
    cmd = [sys.executable, "-m", "novelforge.jobs.run_worker"]
else:
    print(f"ERROR: Unknown SERVICE_TYPE: {SERVICE_TYPE}")
    print("Valid values: web, worker")
    sys.exit(1)

print(f"Running: {' '.join(cmd)}")
print("=" * 50)

# Replace this process with the actual command
os.execvp(cmd[0], cmd)
