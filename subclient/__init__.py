"""Asyncio client for querying a Substrate node and following transactions over JSON-RPC."""

__version__ = "0.1.0"

__all__ = ["codec", "hashing", "metadata", "node", "rpc", "storage", "transaction"]