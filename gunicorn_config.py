import multiprocessing
import os

# Gunicorn configuration file
# https://docs.gunicorn.org/en/stable/configure.html#configuration-file

# Server socket
bind = os.getenv("BIND") or "0.0.0.0:4242"

# Worker processes
# A common formula is (2 x num_cores) + 1
workers = int(os.getenv("WEB_CONCURRENCY") or multiprocessing.cpu_count() * 2 + 1)
worker_class = "sync"
threads = 2

# Timeouts; outbound Whop calls are bounded by WHOP_HTTP_TIMEOUT_SECONDS
timeout = 120
keepalive = 5

# Logging
accesslog = "-"
errorlog = "-"
loglevel = "info"

# Process naming
proc_name = "linkvault_api"


def post_fork(server, worker):
    # every worker drains the webhook inbox; rows are claimed atomically
    from services.webhooks import start_worker
    start_worker()
