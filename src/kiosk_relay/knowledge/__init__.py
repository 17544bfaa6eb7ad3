"""Knowledge storage and retrieval."""

__all__ = ["KnowledgeStore"]


def __getattr__(name: str):
    if name == "KnowledgeStore":
        from kiosk_relay.knowledge.store import KnowledgeStore
        return KnowledgeStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
