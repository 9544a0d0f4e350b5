"""Shared infrastructure: message bus, config, event log, FSM, domain types."""
