"""SQLite storage plumbing shared by the work item store and the queue."""
