"""Background jobs: queue port, local stand-in, sync / refresh handlers."""
