"""
Test suite for rampload.

This package contains:
- unit/: engine components driven with in-memory fakes
- integration/: whole runs with real virtual-user threads, including
  the order-API presets against an in-process Flask service
"""
