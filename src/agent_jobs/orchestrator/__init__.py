"""Job orchestrator for shell builds and agent CLI turns.

A job is persisted as ``pending``, executed on a worker thread (spawn,
multiplex stdout/stderr into ordered log lines and live events, finalize)
and, for agent turns, synchronized back to the object store with a git
snapshot. Live process handles exist only in memory; everything a client
may need after a restart is in the ``jobs``/``job_logs`` tables.
"""
