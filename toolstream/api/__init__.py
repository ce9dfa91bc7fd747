"""Provider side: SSE parsing, HTTP transport, turn engine, and session."""
