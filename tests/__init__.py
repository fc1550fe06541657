"""
Tests for Claude Hybrid Search.

This module contains tests for all components of the hybrid search
system.
"""
