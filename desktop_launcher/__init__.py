"""Provisioning and supervision of the ComfyUI desktop runtime."""

__version__ = "0.1.0"
