"""Test suite for iomux."""
