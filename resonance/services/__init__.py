"""Data access and domain services used by the processors."""
