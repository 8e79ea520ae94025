"""
FastAPI routers for the order import API.
"""
