"""Job lifecycle orchestration over pluggable execution backends.

Why an in-process queue and not Celery / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not queuing. It is the boundary between a durable job
row and a backend attempt: per-backend WIP caps, circuit breakers that fail
over to the next provider, heartbeats, approval gates and a retry policy that
depends on how the backend failed. A SQLite-backed queue keeps a single
worker host free of broker infrastructure while the job table stays the
source of truth for every status change.
"""
