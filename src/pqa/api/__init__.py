"""PQA HTTP and WebSocket control API."""
