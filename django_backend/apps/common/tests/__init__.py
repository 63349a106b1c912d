"""
Test package for the common application.

Covers the shared utilities and the exception hierarchy with its DRF
handler.
"""
