"""Static asset HTTP server."""
