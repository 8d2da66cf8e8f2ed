"""Stateful services wrapping external processes and files."""
