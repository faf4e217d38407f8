"""Tests for kots-local command line tools."""
