"""Resolve, download, sign and verify the attestations of container images."""

__version__ = "0.1.0"
