"""Claimflow service layer."""
