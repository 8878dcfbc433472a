"""Per-user learning from marketing decisions and signal interactions."""
