"""Bookstore order service: inventory-safe order placement and deferred job delivery."""
