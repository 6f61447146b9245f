"""Ember: quiet, personal-baseline health check-ins.

This package holds the domain models and services that turn a daily health
snapshot into at most one gentle message per day, isolated from HTTP and SMS
specifics so the core can be tested and reasoned about on its own.
"""
