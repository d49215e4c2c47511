"""Append-only event store with local buffering and deterministic replay.

Key Components:
    - EventStore: Sequencing, idempotent append, query and replay
    - EventBackend: Storage contract (MemoryEventBackend, FileEventBackend)
    - EventBuffer: Durable local spool used while the backend is unavailable
    - apply_event / replay: Pure projection used by replay and live state
"""
