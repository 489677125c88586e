"""Streaming orchestration core."""
