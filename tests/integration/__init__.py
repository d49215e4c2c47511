"""End-to-end workflow scenarios.

Run with: pytest tests/integration/ -v -m integration
"""
