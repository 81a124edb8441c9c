"""
Cadence reminder scheduling package.

Recurrence math, routine expansion and the denormalized notification queue
live under ``cadence.reminders``.
"""
