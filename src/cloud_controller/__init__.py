"""Cloud Controller service-instance lifecycle engine."""
