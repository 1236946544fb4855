"""Test suite for the Finance Dashboard API."""
