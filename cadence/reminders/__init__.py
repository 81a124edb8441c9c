"""Reminder scheduling (recurrence, routines, notification queue, dispatch).

Runs as Celery tasks against a document store: a daily rebuild keeps the
notification queue in step with reminders and routines, and a frequent
dispatch pass hands due entries to the delivery channels.
"""
