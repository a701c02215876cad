"""
kvlab: RESP Key-Value Toolkit

An in-memory key-value server speaking the RESP2 protocol, built with
Python asyncio, together with a blocking client that supports
pipelines, transactions, streams and publish/subscribe.
"""

__version__ = "1.0.0"
