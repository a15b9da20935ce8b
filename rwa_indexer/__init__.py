"""
RWA Event Indexer

A backend service for the RWA tokenization platform that provides:
- Event indexing for the DEX, fungible token, NFT and price oracle contracts
- Exactly-once storage keyed by (transaction hash, log index)
- Checkpointed backfill after downtime and live head following
"""

__version__ = "0.1.0"
__author__ = "RWA Platform Team"
