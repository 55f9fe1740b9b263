"""Per-node agent applying declarative network state transactionally."""
