"""Wearable sync infrastructure for PulseBridge.

Modules:
    dedup        — In-memory collapse + keyed upserts (Deduplicator/Upserter)
    orchestrator — Pull a user's recent history from a provider
    scheduler    — Run the orchestrator for every connected user
"""
