"""HTTP adapter."""
