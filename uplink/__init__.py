"""Exercise data uplink: wire encoder, connection manager and send loop."""
