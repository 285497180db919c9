"""Sync subpackage: anchored provider pulls and end-to-end orchestration.

Modules:
    anchored    — AnchoredSyncController and per-stream handlers
    coordinator — SyncCoordinator (run de-duplication, rate limiting, events)
"""
