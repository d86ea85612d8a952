"""Tests for services module."""
