"""PathNotify test suite."""
