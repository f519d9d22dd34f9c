"""Hunt and event-table planning, configuration loading and client message routing for a monitoring server."""

__version__ = "0.1.0"