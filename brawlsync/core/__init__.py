"""Core synchronization primitives: store, limiter gateway, lock, cursors and persistence."""
