"""Subscription plans and plan transitions."""
