"""HTTP surface of the worker process."""
