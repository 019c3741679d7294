"""Pydantic models for the extraction API."""
