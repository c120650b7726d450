"""Alert lifecycle, escalation and notification dispatch engine."""
