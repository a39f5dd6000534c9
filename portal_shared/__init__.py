"""
Shared building blocks for the Portal API Client.

This package contains the data models, interfaces, exception hierarchy and
logging configuration used by the client components.
"""
