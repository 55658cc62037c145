#!/usr/bin/env python3

import multiprocessing
import os

# Server socket
bind = f"{os.environ.get('HOST', '0.0.0.0')}:{os.environ.get('PORT', '3000')}"
backlog = 2048

# Worker processes
# One worker per CPU plus one unless WEB_CONCURRENCY is set; each merge runs its own FFmpeg process.
workers = int(os.environ.get('WEB_CONCURRENCY', multiprocessing.cpu_count() + 1))
worker_class = 'uvicorn.workers.UvicornWorker'
worker_connections = 1000
# Longer than TRANSCODE_TIMEOUT so a slow merge is not killed mid-response
timeout = int(float(os.environ.get('TRANSCODE_TIMEOUT', '900'))) + 60
graceful_timeout = 30
keepalive = 2

# Restart workers after this many requests, to help prevent memory leaks
max_requests = 1000
max_requests_jitter = 100

# Logging
loglevel = os.environ.get('LOG_LEVEL', 'info').lower()
accesslog = '-'
errorlog = '-'
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(L)s'

# Process naming
proc_name = 'video-merge-api'

# Server mechanics
preload_app = False
daemon = False
user = None
group = None
tmp_upload_dir = os.environ.get('VIDEO_MERGE_TMP_DIR')
