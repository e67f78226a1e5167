"""patternbank - scored semantic memory for agent tasks.

Core modules:
- memory.store: SQLite-backed patterns, links, trajectories and leases
- memory.retrieval: composite scoring with diversity-aware top-k
- memory.reinforce: multiplicative confidence learning from verdicts
- memory.distill: new patterns from successful trajectories (PII-scrubbed)
- memory.consolidate: dedup merge, contradiction flagging, pruning
- memory.embeddings: Embedder backends (hash, sentence-transformers)
- judge: verdicts from task output markers
- engine: per-task facade used by orchestration callers
- db: SQLite connection with WAL mode and schema migrations
- config: EngineConfig and YAML/JSON loading
- paths: .patternbank directory resolution

Architecture: the engine holds no state between calls; the store owns
every row and callers own the task counter that triggers consolidation.
"""

__version__ = "1.0.0"
