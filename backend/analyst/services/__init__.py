"""Endpoint extraction services and provider clients."""
