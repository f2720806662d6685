"""Task delegation engine for a directory-backed queue of CLI agent tasks.

A task is one JSON file; the directory holding it is its lifecycle state.
The daemon claims a task by renaming it from ``inbox/`` to ``processing/``,
routes it to one configured agent, optionally isolates the run in a fresh
git worktree, executes the agent as a subprocess and records the attempt
under ``runs/`` before moving the file to ``completed/``, ``failed/`` or
back to ``inbox/`` for a retry.
"""
