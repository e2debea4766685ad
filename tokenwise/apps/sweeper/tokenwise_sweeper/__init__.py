"""Tokenwise sweeper: background expiry of lapsed token pools."""
