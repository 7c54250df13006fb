"""SQLite storage plumbing: engine policy, ORM tables, migrations."""
