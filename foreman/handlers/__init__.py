"""Loop runners and event handlers for Foreman.

The heartbeat scheduler drains the queue; the periodic job source feeds
it; the dispatcher routes payloads to host handlers; the notifier listens
on the bus for failures.
"""
