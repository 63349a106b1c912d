"""
Shared components for the case workflow engine.

Holds the exception hierarchy and the utility helpers used by every
other application.
"""
