"""Test suite for tamma."""
