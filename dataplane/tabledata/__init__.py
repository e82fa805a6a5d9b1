"""
tabledata - typed single-table entity storage with change data capture.

Many entity types share one DynamoDB table. Each type declares its key
templates, fields and secondary indexes in an EntityRegistry; the codecs
turn domain attributes into storage columns and back, and the entity store
layers optimistic concurrency on conditional writes. Every mutation flows
out of the table's stream, through the dispatcher, onto an event bus where
enrichers and change handlers react to it.

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────┐
    │   Caller    │────▶│ EntityStore  │────▶│ DynamoDB table  │
    └─────────────┘     └──────────────┘     └────────┬────────┘
                               ▲                      │ stream
                               │                      ▼
                        ┌──────┴──────┐       ┌─────────────────┐
                        │  Enricher   │◀──────│ TableDispatcher │
                        └─────────────┘  bus  └─────────────────┘
                        (EventBridge / Kafka)

Invariants:
    - Every stored item carries its type tag; reads check it
    - Versions increase by exactly one per update or touch
    - The stream is delivered at least once; consumers must be idempotent

How to change safely:
    - Key templates of a registered type are part of the stored data;
      changing one orphans existing items
    - Add fields as optional; required fields break reads of old items
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
