"""Prompt builders and structured-output models for Claude calls."""
