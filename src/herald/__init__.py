"""Herald — durable notification dispatch.

Application code enqueues notifications; notifier workers lease them from
the database, hand them to a pluggable dispatcher (SMTP, webhook, ...) and
record the outcome. Delivery is at-least-once and survives worker crashes.
"""

__version__ = "0.1.0"
