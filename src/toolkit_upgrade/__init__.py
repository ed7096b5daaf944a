"""
Toolkit upgrade - self-update procedure for a containerized deployment toolkit.

This package checks for toolkit code updates, upgrades the deployment's
persisted application version with operator confirmation, and coordinates
stopping and starting the managed services around the change.
"""

__version__ = "0.1.0"
