"""
Core modules for Fuel Meter Guard.

This package contains the meter calculation engine: reading storage, the
modification window, rollover handling, estimation, deviation analysis and
the approval workflow.
"""
