"""Token estimation and compaction."""
