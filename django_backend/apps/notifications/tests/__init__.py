"""
Notifications app test suite.
"""
