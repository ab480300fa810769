"""Realtime chat and presence subsystem.

Components:
    - store: DuckDB chat thread store (per-thread serialized mutations)
    - presence: connection handles + process-local presence registry
    - gateway: handshake authentication and connect/disconnect lifecycle
    - rooms: room membership and join-time read reconciliation
    - dispatcher: message persistence and fan-out
    - lifecycle: get-or-create and thread queries
"""
