"""Sync infrastructure for the bridge.

Modules:
    dedup     — Field-subset deduplication of treatments and entries
    scheduler — Fixed-interval polling loops
    service   — Watermark ownership and cycle serialisation
"""
