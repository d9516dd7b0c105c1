"""Rebuild an installable pacman package from the files installed on this system."""

__version__ = "1.0.1"
