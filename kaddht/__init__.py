"""Kademlia DHT building blocks: wire messages, lookup state, diversity filter, provider records, routing-table refresh and lookups."""

__version__ = "0.1.0"

__all__ = [
    "diversity_filter",
    "message",
    "protocol_messenger",
    "providers",
    "qpeerset",
    "query",
    "rt_refresh",
]