import os

bind = os.getenv("BIND", "127.0.0.1:8000")
# Reminder cycles run inside each worker; the per-tier cycle lock in the cache
# backend keeps them from overlapping, which needs CACHE_BACKEND=redis when workers > 1.
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 60
graceful_timeout = 30
keepalive = 5
loglevel = "info"
accesslog = "-"
errorlog = "-"
