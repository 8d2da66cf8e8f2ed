"""First-run installation, validation and repair flow."""
