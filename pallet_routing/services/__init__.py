"""Routing services: ledgers, aggregation, the coordinator and read models."""
