"""Batch dispatch — turns triggers into Jobs, WorkRecords and queued pipeline runs."""
