"""Synchronization engine.

- `mapper` / `timezones`: pure translation between provider and local events
- `correlation`: local event <-> external event correlation rows
- `orchestrator`: pull-then-push runs and real-time push hooks
- `scheduler`: periodic catch-up of due connections
- `service`: connection and pairing management used by the API
"""
