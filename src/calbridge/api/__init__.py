"""Webhook API for calbridge."""
