"""Billing application package: core plumbing, ORM models, services and HTTP API."""
