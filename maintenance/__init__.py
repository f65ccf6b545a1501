"""Index and statistics maintenance work-lists."""
