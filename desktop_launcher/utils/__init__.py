"""Small filesystem, process and terminal helpers."""
