"""
Gunicorn Configuration

Uvicorn workers under Gunicorn. Each worker owns a refresh coordinator,
so keep the worker count modest and scale out with replicas instead.
"""

import os

bind = f"{os.getenv('API_HOST', '0.0.0.0')}:{os.getenv('API_PORT', '8000')}"
workers = int(os.getenv("API_WORKERS", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
proc_name = "directory-category-sync"

# Graceful shutdown waits for in-flight read-model builds
_build_timeout = float(os.getenv("DIRECTORY_BUILD_TIMEOUT_SECONDS", "60"))
graceful_timeout = int(_build_timeout) + 10
timeout = 120
keepalive = 5
max_requests = 10000
max_requests_jitter = 1000

errorlog = "-"
accesslog = None  # RequestLoggingMiddleware logs requests
loglevel = os.getenv("LOG_LEVEL", "info").lower()


def worker_int(worker):
    worker.log.info("Worker %s interrupted, stopping refresh coordinator", worker.pid)
