"""Inbound webhook verification and processing."""
