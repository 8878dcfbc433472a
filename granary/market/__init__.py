"""Market data: futures quotes, basis history and technical indicators."""
