"""Viral growth service: configuration, storage, signing and the operational surface."""

__version__ = "1.0.0"
