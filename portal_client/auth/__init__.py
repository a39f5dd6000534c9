"""
Authentication package for the Portal API Client.

This package contains the credential stores, the single-flight refresh
coordinator and read-only token inspection helpers.
"""
