"""Asynchronous orchestration of long-running LLM sessions.

Why an SQLite queue rather than SQS / Celery?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Delivery is at-least-once no matter which broker carries it, so the broker is
not where correctness lives. The session claim is: a compare-and-set that
moves a session to running and bumps its execution count. Every later write
by the worker (event appends, heartbeats, finalize, fail) presents that count
as a claim token and is rejected once another delivery has taken over.

Given that boundary, the queue only needs visibility windows, receipt
handles, a receive budget and a dead-letter state. ``SqliteTaskQueue``
provides those next to the session and event tables, so the whole runtime
needs nothing beyond a single SQLite file. Anything implementing the
``TaskQueue`` protocol can replace it.
"""
