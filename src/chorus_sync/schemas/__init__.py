"""Pydantic schemas for wire messages and the local API."""
