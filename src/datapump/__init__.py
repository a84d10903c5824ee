"""
datapump - Terminal-first bulk record transfer between data stores.

Moves record sets from a source backend to a target backend through a
pool of isolated worker processes with bounded retries and memory gating.
"""

__version__ = "0.1.0"
__app_name__ = "datapump"
