"""Rich rendering helpers for the devfleet CLI."""
