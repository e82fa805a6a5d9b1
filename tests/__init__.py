"""
tabledata test suite.

This package contains:
- unit/: Unit tests (codecs, schema, config, adapters with mocked clients)
- integration/: Integration tests (in-memory table, in-memory event bus)
"""
