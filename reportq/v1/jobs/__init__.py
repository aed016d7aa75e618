"""
Report job pipeline.

This package provides the asynchronous job path:
- Ingestion saga (record, then publish, with compensation on publish failure)
- Single-message job processor driving the job state machine
- Bounded retries with the counter persisted in the status store
- Dead-lettering through the broker topology
"""
