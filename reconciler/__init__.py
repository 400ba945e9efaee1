"""Bank transaction / inbox document matching engine."""
