"""Durable plan memory for batch task orchestration.

Planning and execution workers never talk to each other directly. They meet
in the database: the planner writes task plans batch by batch and moves the
plan's batch index, the executor walks the planned tasks with its own cursor
and records every attempt as a task test row. Both can crash and restart at
any point and pick up where the stored state says they were.

Why not a task queue?
~~~~~~~~~~~~~~~~~~~~~
Tasks here are not fire-and-forget messages. The executor needs ordered
access to a whole batch, resumable positions inside it, retries that keep
earlier attempts, and aggregate batch outcomes. These are rows with
invariants, which a relational store with upserts and single-row atomic
updates already gives us.
"""

__version__ = "0.1.0"
