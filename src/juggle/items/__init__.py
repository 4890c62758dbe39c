"""Work items, sessions, and their persistent store."""
