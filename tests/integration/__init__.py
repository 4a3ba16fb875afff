"""
Integration tests: full load runs through scheduler, virtual users,
metrics, thresholds and summary.
"""
