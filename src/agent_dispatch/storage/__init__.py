"""SQLite persistence primitives for jobs, agents and the job queue."""
