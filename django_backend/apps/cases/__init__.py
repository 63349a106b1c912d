"""
Cases application module.

Case persistence is external; this app owns the case enumerations and
the phase state machine that decides which transitions are legal.
"""
