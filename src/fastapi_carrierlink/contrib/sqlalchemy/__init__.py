"""SQLAlchemy persistence for shipments, events and buffered webhooks."""
