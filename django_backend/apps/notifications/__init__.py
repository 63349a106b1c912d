"""
Notifications application module.

Builds structured notification descriptors (type, recipients, channel,
template, urgency) for the workflow engines and keeps them in an outbox
for an external transport to pick up.
"""
