"""
Core modules for Usage Limiter.

This package contains limit resolution, reset scheduling,
usage accounting and reporting.
"""
