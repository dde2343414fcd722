"""Celery tasks: scheduled sweeps and the mail outbox consumer."""
