"""Relational persistence for jobs, job logs, and scope snapshots."""
