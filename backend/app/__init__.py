"""
SilentLine - Backend Application Package

This package contains the dispatch hub backend:
- API routes and WebSocket handlers
- Call-session orchestration core
- Service wrappers for external triage analysis and TURN credentials
- Privacy-aware logging
"""

__version__ = "0.1.0"
