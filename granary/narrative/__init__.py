"""LLM-written narrative for signals, strategy and market outlook."""
