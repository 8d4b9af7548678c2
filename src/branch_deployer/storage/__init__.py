"""Persistence layer: ORM tables, engine policy and migrations."""
