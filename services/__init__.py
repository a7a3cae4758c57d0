"""SuaTalk Analysis - Boundary services (prediction client, alerting, worker)."""
