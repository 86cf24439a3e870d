"""
Filesystem source: reports files added to or modified in a watched tree.
"""

from .source import FilesystemSource, KnownFile  # noqa: F401
