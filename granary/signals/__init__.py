"""Marketing signal rules, preferences and the signal lifecycle."""
