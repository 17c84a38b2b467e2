"""OCI registry client library

This module provides a Python API for the pull side of the OCI registry API
and the OCI documents needed to walk an image index.
"""
from .client import Client, RegistryClient
from .descriptor import Descriptor
from .index import Index, Platform, PlatformDescriptor
from .manifest import Manifest
from .reference import ImageReference

__all__ = [
    "Client",
    "Descriptor",
    "ImageReference",
    "Index",
    "Manifest",
    "Platform",
    "PlatformDescriptor",
    "RegistryClient",
]
