"""Process-wide plumbing: structured logging, tracing and metrics."""
