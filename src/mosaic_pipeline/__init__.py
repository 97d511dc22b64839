"""
Task-processing engine for custom mosaic-art orders.

Redis-backed priority queues with delayed execution, quadratic retry backoff and
completed/failed archives, plus the image/AI/email job helpers built on top.
"""

__version__ = "0.4.0"
