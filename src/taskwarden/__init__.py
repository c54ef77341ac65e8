"""Host resource monitor with a shared sample cache and process termination."""
