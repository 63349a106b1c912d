"""
Tests for the case workflow, automation and business rule engines.

Shared test data builders live in ``factories``.
"""
