"""Runtime service and command-line interface."""
