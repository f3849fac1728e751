"""
CallSync - Backend Application Package

This package contains the core backend logic:
- API routes and the server-sent event stream
- Admission control for upstream-facing operations
- Session gateway, event relay and session tracker
- Service wrappers for the upstream call and analysis APIs
"""

__version__ = "0.1.0"
