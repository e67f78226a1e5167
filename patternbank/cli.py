"""patternbank command line. Every command prints JSON to stdout.

    patternbank add --content "..." [--domain d] [--tags a,b] [--link related_to:other-id]
    patternbank recall "query" [--k 5] [--domain d]
    patternbank record trajectory.json          # or - for stdin
    patternbank consolidate [--dry-run] [--if-due N]
    patternbank stats

Global options pick the store (--db, else PATTERNBANK_DB_PATH, else
.patternbank/patternbank.db), the engine config (--config) and the
embedding backend (--embedder).
"""

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from jsonschema import validate, ValidationError as SchemaError

from . import __version__
from .config import EngineConfig, load_config
from .db.schema import Pattern, PatternLink, TaskTrajectory, RELATIONS, VERDICTS
from .engine import MemoryEngine
from .errors import ConsolidationSkipped, PatternBankError, ValidationError
from .judge import MarkerJudge
from .logging_config import configure_logging, clear_log, current_log_file, get_log_contents, get_logger
from .memory.distill import make_pattern_id
from .memory.embeddings import HashEmbedder, SentenceTransformerEmbedder, embed_checked
from .memory.store import PatternStore
from .paths import resolve_db_path

log = get_logger("patternbank.cli")

TRAJECTORY_SCHEMA = {
    "type": "object",
    "required": ["id", "query_text"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "namespace": {"type": "string", "minLength": 1},
        "query_text": {"type": "string", "minLength": 1},
        "used_pattern_ids": {"type": "array", "items": {"type": "string"}},
        "verdict": {"enum": list(VERDICTS) + [None]},
        "verdict_confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "timestamp": {"type": "string"},
        "rationale": {"type": ["string", "null"]},
        "output": {"type": "string"},
    },
    "additionalProperties": False,
}


def _make_embedder(args):
    if args.embedder == "sentence-transformers":
        return SentenceTransformerEmbedder(args.model)
    return HashEmbedder(args.dim)


def _make_engine(args) -> MemoryEngine:
    config = load_config(args.config) if args.config else EngineConfig()
    store = PatternStore(resolve_db_path(args.db), embedding_dim=config.embedding_dim)
    return MemoryEngine(store, _make_embedder(args), judge=MarkerJudge(), config=config)


def _read_trajectory(source: str, namespace: str) -> TaskTrajectory:
    try:
        text = sys.stdin.read() if source == "-" else Path(source).read_text()
    except OSError as e:
        raise ValidationError(f"Cannot read trajectory: {e}", source=source) from e
    try:
        data = json.loads(text)
        validate(instance=data, schema=TRAJECTORY_SCHEMA)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Trajectory is not valid JSON: {e}") from e
    except SchemaError as e:
        raise ValidationError(f"Invalid trajectory: {e.message}") from e
    data.setdefault("namespace", namespace)
    return TaskTrajectory(**data)


def _split(value: Optional[str]) -> list:
    return [v.strip() for v in value.split(",") if v.strip()] if value else []


def _parse_link(raw: str, namespace: str, from_id: str) -> PatternLink:
    relation, sep, to_id = raw.partition(":")
    if not sep or relation not in RELATIONS or not to_id:
        raise ValidationError(f"--link must be RELATION:ID with RELATION in {RELATIONS}", link=raw)
    return PatternLink(namespace, from_id, to_id, relation)


def cmd_add(engine: MemoryEngine, args) -> dict:
    ns = args.namespace
    content = args.content.strip()
    if not content:
        raise ValidationError("--content is empty")
    pattern_id = args.id or make_pattern_id(content, f"{ns}:{content}")
    embedding = embed_checked(engine.embedder, content, ns, engine.config.embedding_dim)
    if engine.store.has_pattern(ns, pattern_id):
        # Update descriptive fields against the stored version
        existing = engine.store.get_pattern(ns, pattern_id)
        pattern = replace(
            existing, content=content, embedding=embedding,
            domain=existing.domain if args.domain is None else args.domain,
            tags=existing.tags if args.tags is None else _split(args.tags),
        )
    else:
        pattern = Pattern(
            id=pattern_id, namespace=ns, content=content, embedding=embedding,
            domain=args.domain or "", tags=_split(args.tags),
            confidence=engine.config.initial_confidence,
        )
    links = [_parse_link(raw, ns, pattern_id) for raw in args.link or []]
    return engine.store.put_pattern(pattern, links=links).to_dict()


def cmd_recall(engine: MemoryEngine, args) -> list:
    hits = engine.retrieve(args.namespace, args.query, k=args.k, domain=args.domain)
    return [h.to_dict() for h in hits]


def cmd_record(engine: MemoryEngine, args) -> dict:
    trajectory = _read_trajectory(args.source, args.namespace)
    return engine.record(trajectory, rationale=args.rationale, domain=args.domain).to_dict()


def cmd_consolidate(engine: MemoryEngine, args) -> dict:
    if args.if_due is not None:
        report = engine.consolidate_if_due(args.namespace, args.if_due)
        if report is None:
            return {"status": "not_run", "completed_tasks": args.if_due}
        return report.to_dict()
    try:
        return engine.consolidate(args.namespace, dry_run=args.dry_run).to_dict()
    except ConsolidationSkipped as e:
        return {"status": "skipped", "reason": str(e), "holder": e.holder}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="patternbank", description="Scored semantic memory for agent tasks")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--db", help="Database path (default: PATTERNBANK_DB_PATH or .patternbank/patternbank.db)")
    p.add_argument("--config", help="Engine config file (YAML or JSON)")
    p.add_argument("--namespace", "-n", default="default")
    p.add_argument("--embedder", choices=["hash", "sentence-transformers"], default="hash")
    p.add_argument("--model", default="all-MiniLM-L6-v2", help="sentence-transformers model name")
    p.add_argument("--dim", type=int, default=256, help="Hash embedder dimension")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging to stderr")
    p.add_argument("--log-file", help="Write debug log to this file")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("add", help="Store a pattern directly")
    s.add_argument("--content", required=True)
    s.add_argument("--id", default=None)
    s.add_argument("--domain", default=None)
    s.add_argument("--tags", default=None, help="Comma-separated tags")
    s.add_argument("--link", action="append", help="RELATION:ID, repeatable")

    s = sub.add_parser("get")
    s.add_argument("id")

    s = sub.add_parser("recall")
    s.add_argument("query")
    s.add_argument("--k", type=int, default=None)
    s.add_argument("--domain", default=None)

    s = sub.add_parser("link")
    s.add_argument("--from", dest="from_id", required=True)
    s.add_argument("--to", dest="to_id", required=True)
    s.add_argument("--rel", required=True, choices=list(RELATIONS))

    s = sub.add_parser("links")
    s.add_argument("--id", default=None)
    s.add_argument("--rel", default=None, choices=list(RELATIONS))

    s = sub.add_parser("record", help="Record a finished trajectory (JSON file or - for stdin)")
    s.add_argument("source")
    s.add_argument("--rationale", default=None)
    s.add_argument("--domain", default=None)

    s = sub.add_parser("trajectories")
    s.add_argument("--since", type=int, default=None, help="Only after this sequence number")
    s.add_argument("--limit", type=int, default=None)
    s.add_argument("--pending", action="store_true", help="Only trajectories not yet consolidated")
    s.add_argument("--uses", default=None, metavar="PATTERN_ID", help="Only trajectories that used this pattern")

    s = sub.add_parser("consolidate")
    s.add_argument("--dry-run", action="store_true")
    s.add_argument("--if-due", type=int, default=None, metavar="COMPLETED_TASKS",
                   help="Only run when the task counter hits the cadence")

    s = sub.add_parser("flag-clear", help="Clear a pattern's contradiction flag after review")
    s.add_argument("id")

    sub.add_parser("stats")

    s = sub.add_parser("log")
    s.add_argument("action", choices=["tail", "clear"])
    s.add_argument("--lines", type=int, default=50)

    return p


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(log_file=Path(args.log_file) if args.log_file else None, verbose=args.verbose)

    if args.cmd == "log":
        if args.action == "clear":
            r = {"cleared": clear_log(), "log_file": str(current_log_file() or "")}
        else:
            r = {"lines": get_log_contents(max_lines=args.lines)}
        print(json.dumps(r, indent=2))
        return 0

    engine = None
    try:
        engine = _make_engine(args)
        ns = args.namespace

        if args.cmd == "add":
            r = cmd_add(engine, args)
        elif args.cmd == "get":
            r = engine.store.get_pattern(ns, args.id).to_dict()
        elif args.cmd == "recall":
            r = cmd_recall(engine, args)
        elif args.cmd == "link":
            r = engine.store.put_link(PatternLink(ns, args.from_id, args.to_id, args.rel)).to_dict()
        elif args.cmd == "links":
            r = [link.to_dict() for link in engine.store.get_links(ns, args.id, args.rel)]
        elif args.cmd == "record":
            r = cmd_record(engine, args)
        elif args.cmd == "trajectories" and args.uses:
            r = [t.to_dict() for t in engine.store.trajectories_using(ns, args.uses)]
        elif args.cmd == "trajectories":
            r = [t.to_dict() for t in engine.store.list_trajectories(
                ns, since_seq=args.since, limit=args.limit, unconsolidated_only=args.pending)]
        elif args.cmd == "consolidate":
            r = cmd_consolidate(engine, args)
        elif args.cmd == "flag-clear":
            r = engine.store.clear_contradiction(ns, args.id).to_dict()
        elif args.cmd == "stats":
            r = engine.store.stats(ns)
    except PatternBankError as e:
        log.debug("Command %s failed: %s", args.cmd, e)
        print(json.dumps({"error": str(e), "type": type(e).__name__}, indent=2))
        return 1
    finally:
        if engine is not None:
            engine.store.close()

    print(json.dumps(r, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
