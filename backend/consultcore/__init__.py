"""Booking lifecycle engine for paid consultation sessions."""

__version__ = "0.1.0"
