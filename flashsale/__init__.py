"""Hourly flash-sale HTTP service with checkout codes, backed by PostgreSQL and Redis."""

__version__ = "0.1.0"