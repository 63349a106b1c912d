"""
Users application module.

User and session management live outside this engine. The app carries
the role choices and the candidate directory seam that assignment
actions query.
"""
