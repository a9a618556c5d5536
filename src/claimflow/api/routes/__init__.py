"""Claimflow API routers."""
