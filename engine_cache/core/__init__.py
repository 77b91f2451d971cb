"""
Core engine management.

This package contains the primary logic. The engine manager acts as the
high-level coordinator, delegating resolution, transfer and storage to the
other layers and applying the retention policy through the culler.
"""
