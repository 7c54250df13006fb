"""Job execution engine: ticket sync, durable queue and the agent loop.

One job turns one ticket into a pull request. A job.process message is
claimed by a worker, the repository is cloned into a private sandbox, and
the external coding agent is run repeatedly with a rebuilt prompt until
its output carries a completion, clarification, permission or PR signal,
or the iteration budget runs out.

Everything durable lives in one SQLite file: projects, tickets, jobs, the
append-only job log and the queue tables. Workers coordinate through
compare-and-set status updates, so a redelivered message for a job that
is already running or finished is a no-op.
"""
