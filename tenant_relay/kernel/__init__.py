"""Kernel utilities shared across the relay.

Rules:
- Kernel code must not import from presentation layers (e.g. FastAPI routes).
- Kernel utilities should stay small and stable; avoid provider logic here.
"""
