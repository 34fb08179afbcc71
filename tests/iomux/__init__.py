"""Tests for the iomux package."""
