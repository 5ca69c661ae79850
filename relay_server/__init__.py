"""Relay server: session registry, routing and the FastAPI application."""
