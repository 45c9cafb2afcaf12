"""
FastAPI routers for organizing API endpoints.

Each module groups the endpoints of one concern: imports, jobs and export.
"""
