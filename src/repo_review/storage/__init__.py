"""SQLite persistence for subjects, jobs, queue entries and reports."""
