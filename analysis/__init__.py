"""SuaTalk Analysis - Asynchronous audio analysis core.

Provides:
- Durable job scheduling with leases (Job Store + Scheduler)
- Recording lifecycle and analysis handler
- Retry/backoff policy and maintenance sweeps
"""

__version__ = "0.1.0"
