"""Book Tracker - Utilities Package

- Field validators shared by the model and the HTTP API
- Output helpers for the CLI
"""
