"""
Services module for settlement business logic.

- settlement: orchestrator, worker driver, preview, reconciliation, lifecycle health
"""
