"""Tests for the domain engine."""
