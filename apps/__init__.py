"""MakeTicket application shells.

This package contains thin I/O layers over ``packages``:
- api: FastAPI HTTP service (API key authentication, rate limiting, request logging)
"""
