"""
Tasks application module.

Task templates, scheduling, reminders, workload tracking and recurrence.
Task persistence itself is handled by the caller.
"""
