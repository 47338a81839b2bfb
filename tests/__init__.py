"""Test package for treepush."""
