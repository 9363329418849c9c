"""
Cluster runtime package.

This package breaks the cluster runtime into focused domain modules while
exporting one public ``Cluster`` entrypoint.
"""

from .core import Cluster

__all__ = ["Cluster"]
