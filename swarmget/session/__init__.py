"""Swarm lifecycle: controller, intents and event stream."""
