"""
Timecopy - point-in-time, versioned backups of files and folders.

Copy what matters, keep the last few versions, forget the rest.
"""

from importlib.metadata import version as _version

__version__ = _version("timecopy")
