"""Collaborator lookups (users, products, orders) consumed by the chat subsystem."""
