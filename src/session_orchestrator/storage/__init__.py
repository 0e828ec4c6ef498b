"""SQLite persistence for orchestration sessions, events and the task queue."""
