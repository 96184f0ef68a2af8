"""
Shared helpers for the Groupeat apps: business-day window, input validation
and the soft delete infrastructure.
"""
