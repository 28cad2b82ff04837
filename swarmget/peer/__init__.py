"""Peer wire protocol, connections, metadata exchange and peer management."""
