"""Structured extraction service for financial documents."""
