"""Lending core services."""
