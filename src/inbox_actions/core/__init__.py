"""Shared infrastructure: errors, logging, retry, rate limiting and text helpers."""
