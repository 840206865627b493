"""Session storage: records, record logs, and the session manager."""
