"""Library Circulation - Services Package

This package contains the modules that talk to the outside world:
- Open Library metadata lookup
- Notification hub with email and log handlers
"""
