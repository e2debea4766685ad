"""Sweeper loops."""
