"""Rate limiting adapters.

A small abstraction over the counter service: an in-process limiter for
single-worker deployments and tests, and a Redis limiter whose state is
shared by every API worker.
"""
