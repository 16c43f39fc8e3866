"""Shared helpers.

- Input validation and normalization (validators.py)
- CLI output rendering (ui_helpers.py)
"""
