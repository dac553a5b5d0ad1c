"""devfleet - control plane for local development fleets.

Supervises dev servers and AI coding-agent sessions, and lets orchestrators
delegate tasks to those sessions with a full audit trail.
"""

__version__ = "0.1.0"
